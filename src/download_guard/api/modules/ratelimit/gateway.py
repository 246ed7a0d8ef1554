from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from download_guard.api.modules.ratelimit.models import (
    BehaviorEvent,
    BlockEntry,
    IdentitySighting,
    QuotaRecord,
    UsedNonce,
)
from download_guard.database.dialect import upsert_insert


class QuotaRecordGateway:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, identity: str) -> QuotaRecord | None:
        stmt = (
            select(QuotaRecord)
            .where(QuotaRecord.identity == identity)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def init_if_absent_or_expired(
        self,
        identity: str,
        components: dict[str, str],
        now: datetime,
        reset_at: datetime,
        ip_address: str | None,
        user_agent: str | None,
    ) -> QuotaRecord:
        insert = upsert_insert(self.session, QuotaRecord)
        stmt = insert.values(
            identity=identity,
            components=components,
            download_count=0,
            first_seen_at=now,
            last_action_at=now,
            reset_at=reset_at,
            suspicious_score=0,
            is_blocked=False,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["identity"],
            set_={
                "components": stmt.excluded.components,
                "download_count": 0,
                "first_seen_at": stmt.excluded.first_seen_at,
                "last_action_at": stmt.excluded.last_action_at,
                "reset_at": stmt.excluded.reset_at,
                "suspicious_score": 0,
                "is_blocked": False,
                "ip_address": stmt.excluded.ip_address,
                "user_agent": stmt.excluded.user_agent,
            },
            where=QuotaRecord.reset_at <= now,
        )
        await self.session.execute(stmt)
        result = await self.session.execute(
            select(QuotaRecord)
            .where(QuotaRecord.identity == identity)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def increment(
        self,
        identity: str,
        components: dict[str, str],
        now: datetime,
        reset_at: datetime,
        ip_address: str | None,
        user_agent: str | None,
    ) -> QuotaRecord:
        """Single-statement increment; an expired window restarts at 1."""
        insert = upsert_insert(self.session, QuotaRecord)
        stmt = insert.values(
            identity=identity,
            components=components,
            download_count=1,
            first_seen_at=now,
            last_action_at=now,
            reset_at=reset_at,
            suspicious_score=0,
            is_blocked=False,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        expired = QuotaRecord.reset_at <= now
        stmt = stmt.on_conflict_do_update(
            index_elements=["identity"],
            set_={
                "download_count": case(
                    (expired, 1),
                    else_=QuotaRecord.download_count + 1,
                ),
                "first_seen_at": case(
                    (expired, stmt.excluded.first_seen_at),
                    else_=QuotaRecord.first_seen_at,
                ),
                "reset_at": case(
                    (expired, stmt.excluded.reset_at),
                    else_=QuotaRecord.reset_at,
                ),
                "suspicious_score": case(
                    (expired, 0),
                    else_=QuotaRecord.suspicious_score,
                ),
                "components": stmt.excluded.components,
                "last_action_at": stmt.excluded.last_action_at,
                "ip_address": stmt.excluded.ip_address,
                "user_agent": stmt.excluded.user_agent,
            },
        ).returning(QuotaRecord)
        result = await self.session.scalars(
            stmt,
            execution_options={"populate_existing": True},
        )
        return result.one()

    async def annotate(
        self,
        identity: str,
        components: dict[str, str],
        now: datetime,
        suspicious_score: int,
        is_blocked: bool,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        stmt = (
            update(QuotaRecord)
            .where(QuotaRecord.identity == identity)
            .values(
                components=components,
                last_action_at=now,
                suspicious_score=suspicious_score,
                is_blocked=is_blocked,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        await self.session.execute(stmt)

    async def scan_active(
        self,
        now: datetime,
        exclude_identity: str,
        limit: int,
    ) -> Sequence[QuotaRecord]:
        stmt = (
            select(QuotaRecord)
            .where(
                QuotaRecord.reset_at > now,
                QuotaRecord.identity != exclude_identity,
            )
            .order_by(QuotaRecord.last_action_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def delete_expired(self, now: datetime) -> int:
        stmt = delete(QuotaRecord).where(QuotaRecord.reset_at <= now)
        result = await self.session.execute(stmt)
        return result.rowcount or 0


class BlockEntryGateway:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_active(
        self,
        targets: Sequence[str],
        now: datetime,
    ) -> BlockEntry | None:
        if not targets:
            return None
        stmt = (
            select(BlockEntry)
            .where(
                BlockEntry.target.in_(targets),
                or_(BlockEntry.is_permanent.is_(True), BlockEntry.expires_at > now),
            )
            .order_by(BlockEntry.is_permanent.desc(), BlockEntry.expires_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_for_target(self, target: str, kind: str, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(BlockEntry)
            .where(
                BlockEntry.target == target,
                BlockEntry.kind == kind,
                BlockEntry.created_at >= since,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def create_many(self, entries: Sequence[BlockEntry]) -> Sequence[BlockEntry]:
        self.session.add_all(entries)
        await self.session.flush()
        return entries


class NonceGateway:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def claim(self, nonce: str, now: datetime, expires_at: datetime) -> bool:
        """Insert the nonce unless a live entry exists. True when this call won."""
        insert = upsert_insert(self.session, UsedNonce)
        stmt = insert.values(nonce=nonce, expires_at=expires_at)
        stmt = stmt.on_conflict_do_update(
            index_elements=["nonce"],
            set_={"expires_at": stmt.excluded.expires_at},
            where=UsedNonce.expires_at <= now,
        ).returning(UsedNonce.nonce)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def delete_expired(self, now: datetime) -> int:
        stmt = delete(UsedNonce).where(UsedNonce.expires_at <= now)
        result = await self.session.execute(stmt)
        return result.rowcount or 0


class IdentitySightingGateway:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def touch(
        self,
        identity: str,
        ip_address: str,
        user_agent: str | None,
        now: datetime,
    ) -> None:
        insert = upsert_insert(self.session, IdentitySighting)
        stmt = insert.values(
            identity=identity,
            ip_address=ip_address,
            user_agent=user_agent,
            first_seen_at=now,
            last_seen_at=now,
            visit_count=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["identity", "ip_address"],
            set_={
                "last_seen_at": stmt.excluded.last_seen_at,
                "user_agent": stmt.excluded.user_agent,
                "visit_count": IdentitySighting.visit_count + 1,
            },
        )
        await self.session.execute(stmt)

    async def count_identities_for_ip(self, ip_address: str, since: datetime) -> int:
        stmt = select(func.count(func.distinct(IdentitySighting.identity))).where(
            IdentitySighting.ip_address == ip_address,
            IdentitySighting.last_seen_at >= since,
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def delete_older_than(self, cutoff: datetime) -> int:
        stmt = delete(IdentitySighting).where(IdentitySighting.last_seen_at < cutoff)
        result = await self.session.execute(stmt)
        return result.rowcount or 0


class BehaviorEventGateway:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, event: BehaviorEvent) -> BehaviorEvent:
        self.session.add(event)
        await self.session.flush()
        return event

    async def count_since(
        self,
        identity: str,
        since: datetime,
        action: str | None = None,
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(BehaviorEvent)
            .where(
                BehaviorEvent.identity == identity,
                BehaviorEvent.created_at >= since,
            )
        )
        if action is not None:
            stmt = stmt.where(BehaviorEvent.action == action)
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def delete_older_than(self, cutoff: datetime) -> int:
        stmt = delete(BehaviorEvent).where(BehaviorEvent.created_at < cutoff)
        result = await self.session.execute(stmt)
        return result.rowcount or 0
