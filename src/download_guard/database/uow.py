from sqlalchemy.ext.asyncio import AsyncSession

from download_guard.api.modules.ratelimit.gateway import (
    BehaviorEventGateway,
    BlockEntryGateway,
    IdentitySightingGateway,
    NonceGateway,
    QuotaRecordGateway,
)


class UnitOfWork:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.quotas = QuotaRecordGateway(session)
        self.blocks = BlockEntryGateway(session)
        self.nonces = NonceGateway(session)
        self.sightings = IdentitySightingGateway(session)
        self.events = BehaviorEventGateway(session)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()


__all__ = ("UnitOfWork",)
