from collections.abc import Mapping
from hashlib import sha256

from pydantic import BaseModel

from download_guard.api.modules.ratelimit.exceptions import ValidationError
from download_guard.api.modules.ratelimit.schema import (
    CompositeIdentity,
    DeviceSignals,
)

# Changing this order invalidates every stored identity.
COMPONENT_ORDER: tuple[str, ...] = (
    "hardware",
    "canvas",
    "webgl",
    "audio",
    "fonts",
    "timezone",
    "storage",
)

# Stable channels outweigh the ones a user can reset.
COMPONENT_WEIGHTS: dict[str, int] = {
    "hardware": 8,
    "canvas": 8,
    "webgl": 4,
    "audio": 2,
    "fonts": 2,
    "timezone": 1,
    "storage": 1,
}

GROUP_FIELDS: dict[str, tuple[str, ...]] = {
    "hardware": (
        "platform",
        "hardware_concurrency",
        "device_memory",
        "screen_width",
        "screen_height",
        "color_depth",
        "pixel_ratio",
        "max_touch_points",
    ),
    "canvas": ("render_hash",),
    "webgl": ("vendor", "renderer"),
    "audio": ("render_hash",),
    "fonts": ("detected",),
    "timezone": ("name", "utc_offset_minutes"),
    "storage": (
        "local_storage",
        "session_storage",
        "indexed_db",
        "persisted",
        "quota_bucket_mb",
        "private_mode",
    ),
}

UNAVAILABLE = "unavailable"


def hash_text(value: str) -> str:
    return sha256(value.encode("utf-8")).hexdigest()


SENTINEL_HASH = hash_text(UNAVAILABLE)


def render_value(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple, set)):
        return ",".join(sorted({render_value(item) for item in value}))
    return str(value).strip()


def canonical_group(name: str, group: BaseModel | None) -> str:
    if group is None:
        return UNAVAILABLE
    return "|".join(render_value(getattr(group, field)) for field in GROUP_FIELDS[name])


def primary_hash_for(components: Mapping[str, str]) -> str:
    return hash_text("|".join(components[name] for name in COMPONENT_ORDER))


def compose(signals: DeviceSignals) -> CompositeIdentity:
    """Hash each signal group on its own, then hash the ordered component hashes."""
    components = {
        name: hash_text(canonical_group(name, getattr(signals, name)))
        for name in COMPONENT_ORDER
    }
    return CompositeIdentity(
        primary_hash=primary_hash_for(components),
        components=components,
    )


def verify(identity: CompositeIdentity) -> CompositeIdentity:
    """Reject identities whose primary hash does not follow from their components."""
    names = set(identity.components)
    expected = set(COMPONENT_ORDER)
    if names != expected:
        missing = sorted(expected - names)
        unknown = sorted(names - expected)
        raise ValidationError(
            f"Unexpected identity components (missing={missing}, unknown={unknown})"
        )
    if primary_hash_for(identity.components) != identity.primary_hash:
        raise ValidationError("Identity hash does not match its components")
    return identity


def similarity_pct(left: Mapping[str, str], right: Mapping[str, str]) -> float:
    """Weighted share of the components present in both identities that match.

    Hardware and canvas dominate: a device that keeps both while resetting
    everything else still reaches the aggregation threshold. An
    unavailable component counts toward the total but never as a match.
    """
    shared = [name for name in left.keys() & right.keys() if name in COMPONENT_WEIGHTS]
    total = sum(COMPONENT_WEIGHTS[name] for name in shared)
    if not total:
        return 0.0
    matching = sum(
        COMPONENT_WEIGHTS[name]
        for name in shared
        if left[name] == right[name] and left[name] != SENTINEL_HASH
    )
    return matching * 100 / total


__all__ = (
    "COMPONENT_ORDER",
    "COMPONENT_WEIGHTS",
    "GROUP_FIELDS",
    "SENTINEL_HASH",
    "UNAVAILABLE",
    "canonical_group",
    "compose",
    "hash_text",
    "primary_hash_for",
    "render_value",
    "similarity_pct",
    "verify",
)
