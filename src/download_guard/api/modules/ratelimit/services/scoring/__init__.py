from download_guard.api.modules.ratelimit.services.scoring.blocklist import Blocklist
from download_guard.api.modules.ratelimit.services.scoring.fraud import (
    IDENTITY_BLOCK_KIND,
    VELOCITY_ACTION,
    FraudScorer,
    ScoreResult,
)

__all__ = (
    "IDENTITY_BLOCK_KIND",
    "VELOCITY_ACTION",
    "Blocklist",
    "FraudScorer",
    "ScoreResult",
)
