import asyncio
from datetime import UTC, datetime, timedelta
from time import monotonic
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from download_guard.api.modules.ratelimit.exceptions import storage_errors
from download_guard.api.modules.ratelimit.gateway import NonceGateway

_PURGE_EVERY = 512


class NonceStore(Protocol):
    async def claim(self, nonce: str, ttl_seconds: int) -> bool:
        """Atomically record ``nonce``. False when it is already live."""
        ...


class InMemoryNonceStore:
    """Per-process nonce store.

    Only safe for a single worker; multi-replica deployments use
    ``DatabaseNonceStore``.
    """

    def __init__(self) -> None:
        self._items: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._call_count = 0

    def _purge_expired(self, now: float) -> None:
        expired = [nonce for nonce, expires_at in self._items.items() if expires_at <= now]
        for nonce in expired:
            del self._items[nonce]

    async def claim(self, nonce: str, ttl_seconds: int) -> bool:
        now = monotonic()
        async with self._lock:
            self._call_count += 1
            if self._call_count >= _PURGE_EVERY:
                self._call_count = 0
                self._purge_expired(now)

            expires_at = self._items.get(nonce)
            if expires_at is not None and expires_at > now:
                return False
            self._items[nonce] = now + ttl_seconds
            return True

    def __len__(self) -> int:
        return len(self._items)


class DatabaseNonceStore:
    """Nonce store backed by ``INSERT ... ON CONFLICT`` on ``used_nonces``.

    Each claim commits in its own short transaction so that a nonce is burnt
    even when the rest of the request later fails.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def claim(self, nonce: str, ttl_seconds: int) -> bool:
        now = datetime.now(UTC)
        with storage_errors("nonce claim"):
            async with self._session_factory() as session:
                claimed = await NonceGateway(session).claim(
                    nonce=nonce,
                    now=now,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                )
                await session.commit()
        return claimed


__all__ = ("DatabaseNonceStore", "InMemoryNonceStore", "NonceStore")
