from download_guard.database.base import Base, DateTimeMixin, UTCDateTime
from download_guard.database.engine import (
    create_engine,
    create_session_factory,
    create_tables,
)

__all__ = [
    "Base",
    "DateTimeMixin",
    "UTCDateTime",
    "create_engine",
    "create_session_factory",
    "create_tables",
]
