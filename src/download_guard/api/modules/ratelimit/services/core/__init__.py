from download_guard.api.modules.ratelimit.services.core.utils import (
    IdentityState,
    create_signal,
    pick_tier,
    severity_for_weight,
    state_for_score,
)

__all__ = (
    "IdentityState",
    "create_signal",
    "pick_tier",
    "severity_for_weight",
    "state_for_score",
)
