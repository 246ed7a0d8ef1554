"""Python client for the rate-limit API.

Seals check and record calls the same way the browser collector does, so
server-side integrations can gate work on a device identity.
"""

import asyncio
import logging

import httpx

from download_guard.api.modules.ratelimit.exceptions import (
    DecryptionError,
    ExpiredError,
    MeteringError,
    ReplayError,
    RequestTimeoutError,
    StorageError,
    ValidationError,
)
from download_guard.api.modules.ratelimit.schema import (
    CompositeIdentity,
    RecordResponse,
    RequestEnvelope,
    VerdictResponse,
)
from download_guard.api.modules.ratelimit.services.envelope import EnvelopeSealer

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE: dict[str, type[MeteringError]] = {
    error.code: error
    for error in (
        ValidationError,
        DecryptionError,
        ExpiredError,
        ReplayError,
        StorageError,
        RequestTimeoutError,
    )
}


class MeteringClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        sealer: EnvelopeSealer,
        base_url: str = "",
        api_key: str | None = None,
        prefix: str = "/rate-limit",
    ):
        self._client = client
        self._sealer = sealer
        self._base_url = base_url.rstrip("/") + prefix
        self._headers = {"X-API-Key": api_key} if api_key else {}

    async def _seal(self, payload: dict) -> RequestEnvelope:
        return await asyncio.to_thread(self._sealer.seal_json, payload)

    async def _post(self, path: str, envelope: RequestEnvelope) -> httpx.Response:
        response = await self._client.post(
            self._base_url + path,
            json=envelope.model_dump(),
            headers=self._headers,
        )
        if response.is_success or response.status_code == 403:
            return response

        try:
            data = response.json()
        except ValueError:
            data = {}
        code = data.get("detail") if isinstance(data, dict) else None
        error = _ERRORS_BY_CODE.get(code) if isinstance(code, str) else None
        logger.warning(
            "Rate-limit API call failed",
            extra={"path": path, "status_code": response.status_code, "code": code},
        )
        if error is None:
            response.raise_for_status()
            raise MeteringError(f"Unexpected response {response.status_code}")
        raise error(f"Rate-limit API rejected the request: {code}")

    async def check(self, identity: CompositeIdentity) -> VerdictResponse:
        envelope = await self._seal(
            {"identity": identity.primary_hash, "components": identity.components}
        )
        response = await self._post("/check", envelope)
        return VerdictResponse.model_validate(response.json())

    async def record(
        self,
        identity: CompositeIdentity,
        elapsed_since_page_load_ms: int | None = None,
    ) -> RecordResponse:
        payload: dict = {
            "identity": identity.primary_hash,
            "components": identity.components,
        }
        if elapsed_since_page_load_ms is not None:
            payload["elapsedSincePageLoadMs"] = elapsed_since_page_load_ms
        envelope = await self._seal(payload)
        response = await self._post("/record", envelope)
        return RecordResponse.model_validate(response.json())


__all__ = ("MeteringClient",)
