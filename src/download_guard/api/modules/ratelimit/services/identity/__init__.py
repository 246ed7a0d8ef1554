from download_guard.api.modules.ratelimit.services.identity.composer import (
    COMPONENT_ORDER,
    COMPONENT_WEIGHTS,
    SENTINEL_HASH,
    compose,
    primary_hash_for,
    similarity_pct,
    verify,
)

__all__ = (
    "COMPONENT_ORDER",
    "COMPONENT_WEIGHTS",
    "SENTINEL_HASH",
    "compose",
    "primary_hash_for",
    "similarity_pct",
    "verify",
)
