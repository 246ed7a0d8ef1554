import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from download_guard.database.base import Base, DateTimeMixin, UTCDateTime


class QuotaRecord(Base):
    __tablename__ = "quota_records"

    identity: Mapped[str] = mapped_column(String(64), primary_key=True)
    components: Mapped[dict] = mapped_column(JSON, default=dict)
    download_count: Mapped[int] = mapped_column(Integer, default=0)
    first_seen_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime())
    last_action_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime())
    reset_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime(), index=True)
    suspicious_score: Mapped[int] = mapped_column(Integer, default=0)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)


class BlockEntry(Base, DateTimeMixin):
    """A block on an identity or on one of its component hashes.

    Entries are never mutated; a newer entry or passive expiry supersedes them.
    """

    __tablename__ = "block_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target: Mapped[str] = mapped_column(String(64), index=True)
    kind: Mapped[str] = mapped_column(String(32))
    reason: Mapped[str] = mapped_column(String(256))
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    is_permanent: Mapped[bool] = mapped_column(Boolean, default=False)


class UsedNonce(Base):
    __tablename__ = "used_nonces"

    nonce: Mapped[str] = mapped_column(String(128), primary_key=True)
    expires_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime(), index=True)


class IdentitySighting(Base):
    __tablename__ = "identity_sightings"
    __table_args__ = (UniqueConstraint("identity", "ip_address"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(String(64), index=True)
    ip_address: Mapped[str] = mapped_column(String(64), index=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    first_seen_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime())
    last_seen_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime())
    visit_count: Mapped[int] = mapped_column(Integer, default=1)


class BehaviorEvent(Base):
    __tablename__ = "behavior_events"
    __table_args__ = (Index("behavior_events_identity_created_idx", "identity", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(String(64))
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(16))
    # Client-reported, untrusted.
    elapsed_since_page_load_ms: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime())
