import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from download_guard.api.modules.ratelimit.exceptions import StorageError
from download_guard.api.modules.ratelimit.services.ledger.quota import (
    PurgeReport,
    QuotaLedger,
)
from download_guard.database.uow import UnitOfWork
from download_guard.settings import MeteringConfig

logger = logging.getLogger(__name__)


async def purge_once(
    session_factory: async_sessionmaker[AsyncSession],
    config: MeteringConfig,
) -> PurgeReport:
    async with session_factory() as session:
        uow = UnitOfWork(session)
        report = await QuotaLedger(uow, config).purge_expired()
        await uow.commit()
    logger.info(
        "Purged expired metering rows",
        extra={
            "quota_records": report.quota_records,
            "nonces": report.nonces,
            "sightings": report.sightings,
            "behavior_events": report.behavior_events,
        },
    )
    return report


async def run_purge_loop(
    session_factory: async_sessionmaker[AsyncSession],
    config: MeteringConfig,
) -> None:
    """Purge expired rows every ``purge_interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(config.purge_interval_seconds)
        try:
            await purge_once(session_factory, config)
        except StorageError:
            logger.exception("Failed to purge expired metering rows")


__all__ = ("purge_once", "run_purge_loop")
