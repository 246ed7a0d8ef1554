from datetime import UTC, datetime, timedelta

from download_guard.api.modules.ratelimit.exceptions import storage_errors
from download_guard.api.modules.ratelimit.models import BlockEntry
from download_guard.api.modules.ratelimit.schema import CompositeIdentity
from download_guard.api.modules.ratelimit.services.identity import (
    COMPONENT_ORDER,
    SENTINEL_HASH,
)
from download_guard.api.modules.ratelimit.services.scoring.fraud import (
    IDENTITY_BLOCK_KIND,
)
from download_guard.database.uow import UnitOfWork
from download_guard.services.logging import get_security_logger
from download_guard.settings import ScoringConfig

security_logger = get_security_logger()


class Blocklist:
    """Block entries keyed by primary hash or by a single component hash.

    A component block (hardware by default) also catches devices that only
    changed their volatile signals.
    """

    def __init__(self, uow: UnitOfWork, config: ScoringConfig):
        self._uow = uow
        self._block_duration = timedelta(hours=config.block_duration_hours)
        self._component_kinds = [
            kind for kind in config.block_component_kinds if kind in COMPONENT_ORDER
        ]

    @staticmethod
    def targets_for(identity: CompositeIdentity) -> list[str]:
        targets = [identity.primary_hash]
        for name in COMPONENT_ORDER:
            component = identity.components.get(name)
            if component and component != SENTINEL_HASH:
                targets.append(component)
        return targets

    async def find_active(
        self,
        identity: CompositeIdentity,
        now: datetime | None = None,
    ) -> BlockEntry | None:
        now = now or datetime.now(UTC)
        with storage_errors("blocklist lookup"):
            return await self._uow.blocks.find_active(self.targets_for(identity), now)

    async def count_prior(self, identity: CompositeIdentity, since: datetime) -> int:
        with storage_errors("block history lookup"):
            return await self._uow.blocks.count_for_target(
                identity.primary_hash,
                kind=IDENTITY_BLOCK_KIND,
                since=since,
            )

    async def block(
        self,
        identity: CompositeIdentity,
        ip_address: str | None,
        reason: str,
        now: datetime | None = None,
        permanent: bool = False,
    ) -> list[BlockEntry]:
        now = now or datetime.now(UTC)
        expires_at = None if permanent else now + self._block_duration

        entries = [
            BlockEntry(
                target=identity.primary_hash,
                kind=IDENTITY_BLOCK_KIND,
                reason=reason,
                ip_address=ip_address,
                expires_at=expires_at,
                is_permanent=permanent,
                created_at=now,
            )
        ]
        for kind in self._component_kinds:
            component = identity.components.get(kind)
            if not component or component == SENTINEL_HASH:
                continue
            entries.append(
                BlockEntry(
                    target=component,
                    kind=kind,
                    reason=reason,
                    ip_address=ip_address,
                    expires_at=expires_at,
                    is_permanent=permanent,
                    created_at=now,
                )
            )

        with storage_errors("block write"):
            await self._uow.blocks.create_many(entries)

        security_logger.warning(
            "Blocked identity",
            extra={
                "identity": identity.primary_hash,
                "ip": ip_address,
                "reason": reason,
                "permanent": permanent,
                "targets": len(entries),
            },
        )
        return entries


__all__ = ("Blocklist",)
