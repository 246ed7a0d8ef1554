import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from download_guard.api.modules.ratelimit.exceptions import storage_errors
from download_guard.api.modules.ratelimit.models import QuotaRecord
from download_guard.api.modules.ratelimit.schema import CompositeIdentity
from download_guard.database.uow import UnitOfWork
from download_guard.settings import MeteringConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PurgeReport:
    quota_records: int = 0
    nonces: int = 0
    sightings: int = 0
    behavior_events: int = 0


class QuotaLedger:
    """Per-identity download counters over a rolling window.

    ``get_or_init`` never touches the counter; ``consume`` is the only
    operation that increments it and does so in a single upsert statement.
    """

    def __init__(self, uow: UnitOfWork, config: MeteringConfig):
        self._uow = uow
        self._window = timedelta(hours=config.window_hours)

    @property
    def window(self) -> timedelta:
        return self._window

    async def get_or_init(
        self,
        identity: CompositeIdentity,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> QuotaRecord:
        now = now or datetime.now(UTC)
        with storage_errors("quota lookup"):
            return await self._uow.quotas.init_if_absent_or_expired(
                identity=identity.primary_hash,
                components=dict(identity.components),
                now=now,
                reset_at=now + self._window,
                ip_address=ip_address,
                user_agent=user_agent,
            )

    async def consume(
        self,
        identity: CompositeIdentity,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> QuotaRecord:
        now = now or datetime.now(UTC)
        with storage_errors("quota consume"):
            record = await self._uow.quotas.increment(
                identity=identity.primary_hash,
                components=dict(identity.components),
                now=now,
                reset_at=now + self._window,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        logger.debug(
            "Consumed quota",
            extra={"identity": identity.primary_hash, "count": record.download_count},
        )
        return record

    async def annotate(
        self,
        identity: CompositeIdentity,
        suspicious_score: int,
        is_blocked: bool,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> None:
        with storage_errors("quota annotate"):
            await self._uow.quotas.annotate(
                identity=identity.primary_hash,
                components=dict(identity.components),
                now=now or datetime.now(UTC),
                suspicious_score=suspicious_score,
                is_blocked=is_blocked,
                ip_address=ip_address,
                user_agent=user_agent,
            )

    async def purge_expired(self, now: datetime | None = None) -> PurgeReport:
        now = now or datetime.now(UTC)
        history_cutoff = now - self._window
        with storage_errors("purge"):
            report = PurgeReport(
                quota_records=await self._uow.quotas.delete_expired(now),
                nonces=await self._uow.nonces.delete_expired(now),
                sightings=await self._uow.sightings.delete_older_than(history_cutoff),
                behavior_events=await self._uow.events.delete_older_than(history_cutoff),
            )
        return report


__all__ = ("PurgeReport", "QuotaLedger")
