from download_guard.api.modules.ratelimit.services.envelope.codec import (
    EnvelopeCodec,
    EnvelopeSealer,
)
from download_guard.api.modules.ratelimit.services.envelope.nonce_store import (
    DatabaseNonceStore,
    InMemoryNonceStore,
    NonceStore,
)

__all__ = (
    "DatabaseNonceStore",
    "EnvelopeCodec",
    "EnvelopeSealer",
    "InMemoryNonceStore",
    "NonceStore",
)
