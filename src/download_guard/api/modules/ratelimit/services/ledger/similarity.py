from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from download_guard.api.modules.ratelimit.exceptions import storage_errors
from download_guard.api.modules.ratelimit.schema import CompositeIdentity
from download_guard.api.modules.ratelimit.services.identity import similarity_pct
from download_guard.database.uow import UnitOfWork
from download_guard.settings import MeteringConfig


@dataclass(slots=True, frozen=True)
class SimilarIdentity:
    identity: str
    download_count: int
    similarity_pct: float


class SimilarityClusterer:
    """Finds active identities whose components overlap the query identity.

    Catches devices that reset some signals (cookies, storage, private mode)
    while hardware-level channels stay stable.
    """

    def __init__(self, uow: UnitOfWork, config: MeteringConfig):
        self._uow = uow
        self._scan_limit = config.similarity_scan_limit

    async def find_similar(
        self,
        identity: CompositeIdentity,
        min_similarity_pct: float,
        now: datetime | None = None,
    ) -> list[SimilarIdentity]:
        now = now or datetime.now(UTC)
        with storage_errors("similarity scan"):
            candidates = await self._uow.quotas.scan_active(
                now=now,
                exclude_identity=identity.primary_hash,
                limit=self._scan_limit,
            )

        matches: list[SimilarIdentity] = []
        for record in candidates:
            pct = similarity_pct(identity.components, record.components or {})
            if pct >= min_similarity_pct:
                matches.append(
                    SimilarIdentity(
                        identity=record.identity,
                        download_count=record.download_count,
                        similarity_pct=pct,
                    )
                )
        matches.sort(key=lambda item: item.similarity_pct, reverse=True)
        return matches


def cluster_members(
    similar: Iterable[SimilarIdentity],
    aggregate_pct: float,
) -> list[SimilarIdentity]:
    return [item for item in similar if item.similarity_pct >= aggregate_pct]


def aggregate_usage(
    own_download_count: int,
    similar: Iterable[SimilarIdentity],
    aggregate_pct: float,
) -> int:
    """Own usage plus the usage of every identity at or above ``aggregate_pct``."""
    return own_download_count + sum(
        item.download_count for item in cluster_members(similar, aggregate_pct)
    )


__all__ = (
    "SimilarIdentity",
    "SimilarityClusterer",
    "aggregate_usage",
    "cluster_members",
)
