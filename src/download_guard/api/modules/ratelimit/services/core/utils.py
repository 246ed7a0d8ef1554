from typing import Literal

from download_guard.api.modules.ratelimit.schema import ScoreSignal

IdentityState = Literal["clean", "suspicious", "blocked"]


def create_signal(code: str, weight: int, message: str) -> ScoreSignal:
    return ScoreSignal(
        code=code,
        severity=severity_for_weight(weight),
        weight=weight,
        message=message,
    )


def severity_for_weight(weight: int) -> str:
    if weight >= 30:
        return "high"
    if weight >= 15:
        return "medium"
    return "low"


def state_for_score(
    score: int,
    block_threshold: int,
    suspicious_threshold: int,
) -> IdentityState:
    if score >= block_threshold:
        return "blocked"
    if score >= suspicious_threshold:
        return "suspicious"
    return "clean"


def pick_tier(
    value: int,
    tiers: list[tuple[int, int, str]],
) -> tuple[int, int, str] | None:
    """Return the highest ``(threshold, weight, code)`` tier reached by ``value``."""
    for tier in sorted(tiers, key=lambda t: t[0], reverse=True):
        if value >= tier[0]:
            return tier
    return None


__all__ = (
    "IdentityState",
    "create_signal",
    "pick_tier",
    "severity_for_weight",
    "state_for_score",
)
