import asyncio
import binascii
import json
import logging
import os
import secrets
from base64 import b64decode, b64encode
from collections.abc import Callable
from time import time
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from download_guard.api.modules.ratelimit.exceptions import (
    DecryptionError,
    ExpiredError,
    ReplayError,
    ValidationError,
)
from download_guard.api.modules.ratelimit.schema import RequestEnvelope
from download_guard.api.modules.ratelimit.services.envelope.nonce_store import (
    NonceStore,
)
from download_guard.services.logging import get_security_logger

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

IV_SIZE = 12
SALT_SIZE = 16
KEY_SIZE = 32
NONCE_BYTES = 16
MIN_CIPHERTEXT_SIZE = 16  # GCM tag


def now_ms() -> int:
    return int(time() * 1000)


def derive_key(secret: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


def associated_data(timestamp: int, nonce: str) -> bytes:
    return f"{timestamp}:{nonce}".encode()


def _b64(data: bytes) -> str:
    return b64encode(data).decode("ascii")


def _unb64(value: str, field: str) -> bytes:
    try:
        return b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"Envelope field {field!r} is not valid base64") from None


class EnvelopeSealer:
    """Client half of the envelope: encrypts with a per-message derived key."""

    def __init__(
        self,
        secret: str,
        kdf_iterations: int,
        clock: Callable[[], int] = now_ms,
    ):
        self._secret = secret
        self._kdf_iterations = kdf_iterations
        self._clock = clock

    def seal(self, plaintext: bytes) -> RequestEnvelope:
        salt = os.urandom(SALT_SIZE)
        iv = os.urandom(IV_SIZE)
        nonce = secrets.token_urlsafe(NONCE_BYTES)
        timestamp = self._clock()

        key = derive_key(self._secret, salt, self._kdf_iterations)
        ciphertext = AESGCM(key).encrypt(iv, plaintext, associated_data(timestamp, nonce))
        return RequestEnvelope(
            ciphertext=_b64(ciphertext),
            iv=_b64(iv),
            salt=_b64(salt),
            nonce=nonce,
            timestamp=timestamp,
        )

    def seal_json(self, payload: dict[str, Any]) -> RequestEnvelope:
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        return self.seal(body.encode("utf-8"))


class EnvelopeCodec(EnvelopeSealer):
    """Seals and opens envelopes, enforcing freshness and single use.

    ``open`` checks, in order: field shape, freshness, authenticity, nonce.
    The nonce is claimed only after the envelope authenticates.
    """

    def __init__(
        self,
        secret: str,
        kdf_iterations: int,
        nonce_store: NonceStore,
        freshness_window_seconds: int = 300,
        clock_skew_seconds: int = 30,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(secret=secret, kdf_iterations=kdf_iterations, clock=clock)
        self._nonce_store = nonce_store
        self._freshness_window_seconds = freshness_window_seconds
        self._clock_skew_seconds = clock_skew_seconds

    @property
    def freshness_window_seconds(self) -> int:
        return self._freshness_window_seconds

    def _decode(self, envelope: RequestEnvelope) -> tuple[bytes, bytes, bytes]:
        iv = _unb64(envelope.iv, "iv")
        salt = _unb64(envelope.salt, "salt")
        ciphertext = _unb64(envelope.ciphertext, "ciphertext")
        if len(iv) != IV_SIZE:
            raise ValidationError(f"Envelope iv must be {IV_SIZE} bytes")
        if len(salt) != SALT_SIZE:
            raise ValidationError(f"Envelope salt must be {SALT_SIZE} bytes")
        if len(ciphertext) < MIN_CIPHERTEXT_SIZE:
            raise ValidationError("Envelope ciphertext is truncated")
        return iv, salt, ciphertext

    def _check_freshness(self, envelope: RequestEnvelope) -> None:
        age_ms = self._clock() - envelope.timestamp
        if age_ms > self._freshness_window_seconds * 1000:
            security_logger.warning(
                "Rejected stale envelope",
                extra={"nonce": envelope.nonce, "age_ms": age_ms},
            )
            raise ExpiredError("Envelope timestamp is outside the freshness window")
        if age_ms < -self._clock_skew_seconds * 1000:
            security_logger.warning(
                "Rejected envelope from the future",
                extra={"nonce": envelope.nonce, "age_ms": age_ms},
            )
            raise ExpiredError("Envelope timestamp is in the future")

    async def open(self, envelope: RequestEnvelope) -> bytes:
        iv, salt, ciphertext = self._decode(envelope)
        self._check_freshness(envelope)

        key = await asyncio.to_thread(
            derive_key, self._secret, salt, self._kdf_iterations
        )
        try:
            plaintext = AESGCM(key).decrypt(
                iv,
                ciphertext,
                associated_data(envelope.timestamp, envelope.nonce),
            )
        except InvalidTag:
            security_logger.warning(
                "Rejected envelope that failed authentication",
                extra={"nonce": envelope.nonce},
            )
            raise DecryptionError("Envelope could not be decrypted") from None

        claimed = await self._nonce_store.claim(
            envelope.nonce,
            ttl_seconds=self._freshness_window_seconds + self._clock_skew_seconds,
        )
        if not claimed:
            security_logger.warning(
                "Rejected replayed envelope",
                extra={"nonce": envelope.nonce},
            )
            raise ReplayError("Envelope nonce has already been used")

        logger.debug("Opened envelope", extra={"nonce": envelope.nonce})
        return plaintext


__all__ = (
    "EnvelopeCodec",
    "EnvelopeSealer",
    "associated_data",
    "derive_key",
    "now_ms",
)
