from functools import lru_cache
from typing import Literal, final

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from yarl import URL


class PostgresConfig(BaseModel):
    user: str
    password: str
    host: str
    port: int = 5432
    db: str


class APIConfig(BaseModel):
    title: str = "Download Guard API"
    version: str = "1.0.0"
    port: int = 8000
    host: str = "0.0.0.0"
    allowed_hosts: list[str]
    api_key: str | None = None

    request_timeout_seconds: float = 15.0


class EnvelopeConfig(BaseModel):
    secret: str = Field(..., min_length=16)
    kdf_iterations: int = Field(100_000, ge=1)
    freshness_window_seconds: int = Field(300, ge=1)
    clock_skew_seconds: int = Field(30, ge=0)
    nonce_backend: Literal["database", "memory"] = "database"


class MeteringConfig(BaseModel):
    enabled: bool = True
    max_downloads: int = Field(3, ge=0)
    window_hours: int = Field(24, ge=1)

    # Broad scan, stricter aggregation.
    similarity_scan_pct: float = Field(40.0, ge=0, le=100)
    similarity_aggregate_pct: float = Field(60.0, ge=0, le=100)
    similarity_scan_limit: int = Field(5000, ge=1)

    trust_forwarded_ip: bool = True
    purge_interval_seconds: int = 900


class ScoringConfig(BaseModel):
    suspicious_threshold: int = Field(30, ge=0, le=100)
    block_threshold: int = Field(50, ge=0, le=100)

    ip_churn_window_minutes: int = 60
    ip_churn_warn_threshold: int = 3
    ip_churn_warn_weight: int = 20
    ip_churn_critical_threshold: int = 6
    ip_churn_critical_weight: int = 40

    velocity_window_seconds: int = 60
    velocity_warn_threshold: int = 10
    velocity_warn_weight: int = 15
    velocity_critical_threshold: int = 25
    velocity_critical_weight: int = 35

    cluster_warn_threshold: int = 2
    cluster_warn_weight: int = 15
    cluster_critical_threshold: int = 4
    cluster_critical_weight: int = 30

    history_lookback_days: int = 30
    history_weight_per_block: int = 15
    history_max_weight: int = 30

    block_duration_hours: int = 24
    permanent_block_after: int = 3
    block_component_kinds: list[str] = Field(default_factory=lambda: ["hardware"])


@final
class Config(BaseSettings):
    model_config: SettingsConfigDict = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="APP__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    env: Literal["local", "dev", "prod"] = "local"

    api: APIConfig
    envelope: EnvelopeConfig
    metering: MeteringConfig = MeteringConfig()
    scoring: ScoringConfig = ScoringConfig()

    postgres: PostgresConfig | None = None
    database_dsn: str | None = None

    @property
    def database_url(self) -> str:
        if self.database_dsn:
            return self.database_dsn
        if self.postgres is None:
            raise ValueError("Either APP__DATABASE_DSN or APP__POSTGRES__* must be set")
        host = "localhost" if self.env == "local" else self.postgres.host
        return URL.build(
            scheme="postgresql+asyncpg",
            user=self.postgres.user,
            password=self.postgres.password,
            host=host,
            port=self.postgres.port,
            path=f"/{self.postgres.db}",
        ).human_repr()


@lru_cache
def get_config() -> Config:
    return Config()
