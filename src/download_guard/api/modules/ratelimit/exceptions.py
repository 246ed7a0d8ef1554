from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError


class MeteringError(Exception):
    """Base error for the metering engine."""

    code = "metering_error"
    status_code = 500
    retryable = False


class ValidationError(MeteringError):
    code = "invalid_request"
    status_code = 400


class IntegrityFailure(MeteringError):
    """Cryptographic or replay failure. Terminal for the request."""

    status_code = 400


class DecryptionError(IntegrityFailure):
    code = "decryption_failed"


class ExpiredError(IntegrityFailure):
    code = "envelope_expired"


class ReplayError(IntegrityFailure):
    code = "envelope_replayed"
    status_code = 409


class StorageError(MeteringError):
    code = "storage_unavailable"
    status_code = 503
    retryable = True


class RequestTimeoutError(MeteringError):
    code = "request_timeout"
    status_code = 503
    retryable = True


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StorageError(f"{operation} failed: {exc.__class__.__name__}") from exc


__all__ = (
    "DecryptionError",
    "ExpiredError",
    "IntegrityFailure",
    "MeteringError",
    "ReplayError",
    "RequestTimeoutError",
    "StorageError",
    "ValidationError",
    "storage_errors",
)
