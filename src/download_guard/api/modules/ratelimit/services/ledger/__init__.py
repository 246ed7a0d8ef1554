from download_guard.api.modules.ratelimit.services.ledger.quota import (
    PurgeReport,
    QuotaLedger,
)
from download_guard.api.modules.ratelimit.services.ledger.similarity import (
    SimilarIdentity,
    SimilarityClusterer,
    aggregate_usage,
    cluster_members,
)

__all__ = (
    "PurgeReport",
    "QuotaLedger",
    "SimilarIdentity",
    "SimilarityClusterer",
    "aggregate_usage",
    "cluster_members",
)
