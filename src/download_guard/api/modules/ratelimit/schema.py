from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

HASH_PATTERN = r"^[0-9a-f]{64}$"


class HardwareSignals(BaseModel):
    platform: str | None = Field(default=None, max_length=128)
    hardware_concurrency: int | None = Field(default=None, ge=1, le=1024)
    device_memory: float | None = Field(default=None, ge=0.125, le=1024)
    screen_width: int | None = Field(default=None, ge=1, le=20000)
    screen_height: int | None = Field(default=None, ge=1, le=20000)
    color_depth: int | None = Field(default=None, ge=1, le=64)
    pixel_ratio: float | None = Field(default=None, gt=0, le=16)
    max_touch_points: int | None = Field(default=None, ge=0, le=64)

    model_config = ConfigDict(extra="forbid")


class CanvasSignals(BaseModel):
    render_hash: str = Field(..., min_length=1, max_length=256)

    model_config = ConfigDict(extra="forbid")


class WebGLSignals(BaseModel):
    vendor: str | None = Field(default=None, max_length=256)
    renderer: str | None = Field(default=None, max_length=512)

    model_config = ConfigDict(extra="forbid")


class AudioSignals(BaseModel):
    render_hash: str = Field(..., min_length=1, max_length=256)

    model_config = ConfigDict(extra="forbid")


class FontSignals(BaseModel):
    detected: list[str] = Field(default_factory=list, max_length=512)

    model_config = ConfigDict(extra="forbid")


class TimezoneSignals(BaseModel):
    name: str | None = Field(default=None, max_length=128)
    utc_offset_minutes: int | None = Field(default=None, ge=-840, le=840)

    model_config = ConfigDict(extra="forbid")


class StorageSignals(BaseModel):
    local_storage: bool | None = None
    session_storage: bool | None = None
    indexed_db: bool | None = None
    persisted: bool | None = None
    quota_bucket_mb: int | None = Field(default=None, ge=0)
    private_mode: bool | None = None

    model_config = ConfigDict(extra="forbid")


class DeviceSignals(BaseModel):
    """Raw probe results from one device. A missing group means the probe failed."""

    hardware: HardwareSignals | None = None
    canvas: CanvasSignals | None = None
    webgl: WebGLSignals | None = None
    audio: AudioSignals | None = None
    fonts: FontSignals | None = None
    timezone: TimezoneSignals | None = None
    storage: StorageSignals | None = None

    model_config = ConfigDict(extra="forbid")


class CompositeIdentity(BaseModel):
    primary_hash: str = Field(..., pattern=HASH_PATTERN)
    components: dict[str, str]

    model_config = ConfigDict(frozen=True)


class RequestEnvelope(BaseModel):
    ciphertext: str = Field(..., min_length=1, max_length=65536)
    iv: str = Field(..., min_length=1, max_length=64)
    salt: str = Field(..., min_length=1, max_length=64)
    nonce: str = Field(..., min_length=8, max_length=128)
    timestamp: int = Field(..., ge=0)

    model_config = ConfigDict(extra="forbid")


class CheckPayload(BaseModel):
    identity: str = Field(..., pattern=HASH_PATTERN)
    components: dict[str, str] = Field(..., max_length=32)

    model_config = ConfigDict(extra="forbid")

    def to_identity(self) -> CompositeIdentity:
        return CompositeIdentity(primary_hash=self.identity, components=self.components)


class RecordPayload(CheckPayload):
    elapsed_since_page_load_ms: int | None = Field(
        default=None,
        alias="elapsedSincePageLoadMs",
        ge=0,
    )

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class VerdictResponse(BaseModel):
    allowed: bool
    remaining: int = Field(..., ge=0)
    reset_at: datetime | None = Field(default=None, alias="resetAt")
    blocked: bool = False
    message: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class RecordResponse(BaseModel):
    success: bool


class ScoreSignal(BaseModel):
    code: str
    severity: Literal["low", "medium", "high"]
    weight: int = Field(..., ge=1, le=100)
    message: str


class ErrorResponse(BaseModel):
    detail: str
    retryable: bool = False
