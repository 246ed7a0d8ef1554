import asyncio

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from download_guard.api.middleware import RequestTimeoutMiddleware
from download_guard.api.modules.ratelimit.gateway import BlockEntryGateway
from download_guard.api.modules.ratelimit.services.identity import compose


def _check_body(identity) -> dict:
    return {"identity": identity.primary_hash, "components": identity.components}


def _record_body(identity, elapsed_ms: int = 4_200) -> dict:
    return {**_check_body(identity), "elapsedSincePageLoadMs": elapsed_ms}


class TestCheck:
    @pytest.mark.asyncio
    async def test_new_device_gets_full_quota(self, client, sealer, make_signals):
        identity = compose(make_signals())
        response = await client.post(
            "/rate-limit/check",
            json=sealer.seal_json(_check_body(identity)).model_dump(),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is True
        assert body["remaining"] == 3
        assert body["blocked"] is False
        assert "resetAt" in body
        assert "message" not in body

    @pytest.mark.asyncio
    async def test_near_duplicate_shares_the_quota(self, client, sealer, make_signals):
        original = compose(make_signals())
        near_duplicate = compose(
            make_signals(
                canvas={"render_hash": "after-reset"},
                storage={"local_storage": False, "private_mode": True},
            )
        )

        for _ in range(3):
            response = await client.post(
                "/rate-limit/record",
                json=sealer.seal_json(_record_body(original)).model_dump(),
            )
            assert response.json() == {"success": True}

        exhausted = await client.post(
            "/rate-limit/check",
            json=sealer.seal_json(_check_body(original)).model_dump(),
        )
        assert exhausted.status_code == 200
        assert exhausted.json()["allowed"] is False
        assert exhausted.json()["remaining"] == 0

        evading = await client.post(
            "/rate-limit/check",
            json=sealer.seal_json(_check_body(near_duplicate)).model_dump(),
        )
        assert evading.status_code == 200
        body = evading.json()
        assert body["allowed"] is False
        assert body["remaining"] == 0
        assert body["blocked"] is False
        assert body["message"]

    @pytest.mark.asyncio
    async def test_same_hardware_and_canvas_shares_the_quota(
        self, client, sealer, make_signals
    ):
        device_x = compose(make_signals())
        device_y = compose(
            make_signals(
                webgl={"vendor": "Google Inc.", "renderer": "ANGLE (SwiftShader)"},
                audio={"render_hash": "35.7383295930922"},
                fonts={"detected": ["Arial"]},
                timezone={"name": "America/New_York", "utc_offset_minutes": -300},
                storage={"local_storage": False, "private_mode": True},
            )
        )
        assert device_y.components["hardware"] == device_x.components["hardware"]
        assert device_y.components["canvas"] == device_x.components["canvas"]

        fresh = await client.post(
            "/rate-limit/check",
            json=sealer.seal_json(_check_body(device_x)).model_dump(),
        )
        assert fresh.json()["allowed"] is True
        assert fresh.json()["remaining"] == 3

        for _ in range(3):
            await client.post(
                "/rate-limit/record",
                json=sealer.seal_json(_record_body(device_x)).model_dump(),
            )

        response = await client.post(
            "/rate-limit/check",
            json=sealer.seal_json(_check_body(device_y)).model_dump(),
        )
        assert response.status_code == 200
        assert response.json()["allowed"] is False
        assert response.json()["remaining"] == 0
        assert response.json()["blocked"] is False

    @pytest.mark.asyncio
    async def test_replayed_envelope_is_rejected(self, client, sealer, make_signals):
        envelope = sealer.seal_json(_check_body(compose(make_signals()))).model_dump()

        first = await client.post("/rate-limit/check", json=envelope)
        second = await client.post("/rate-limit/check", json=envelope)

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json() == {"detail": "envelope_replayed", "retryable": False}

    @pytest.mark.asyncio
    async def test_wrong_secret_is_rejected(self, client, make_sealer, make_signals):
        sealer = make_sealer(secret="attacker-guessed-secret")
        response = await client.post(
            "/rate-limit/check",
            json=sealer.seal_json(_check_body(compose(make_signals()))).model_dump(),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "decryption_failed"

    @pytest.mark.asyncio
    async def test_malformed_envelope_is_rejected(self, client):
        response = await client.post("/rate-limit/check", json={"ciphertext": "x"})
        assert response.status_code == 400
        assert response.json() == {"detail": "invalid_request", "retryable": False}

    @pytest.mark.asyncio
    async def test_forged_identity_is_rejected(self, client, sealer, make_signals):
        identity = compose(make_signals())
        body = {"identity": "f" * 64, "components": identity.components}
        response = await client.post(
            "/rate-limit/check",
            json=sealer.seal_json(body).model_dump(),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_disabled_metering_always_allows(
        self, client_for, config, sealer, make_signals
    ):
        disabled = config.model_copy(
            update={"metering": config.metering.model_copy(update={"enabled": False})}
        )
        identity = compose(make_signals())
        async with client_for(disabled) as client:
            for _ in range(4):
                await client.post(
                    "/rate-limit/record",
                    json=sealer.seal_json(_record_body(identity)).model_dump(),
                )
            response = await client.post(
                "/rate-limit/check",
                json=sealer.seal_json(_check_body(identity)).model_dump(),
            )
        assert response.status_code == 200
        assert response.json()["allowed"] is True

    @pytest.mark.asyncio
    async def test_storage_failure_fails_closed(
        self, client, sealer, make_signals, monkeypatch
    ):
        async def broken_find_active(self, targets, now):
            raise OperationalError("SELECT 1", {}, Exception("database is gone"))

        monkeypatch.setattr(BlockEntryGateway, "find_active", broken_find_active)
        identity = compose(make_signals())

        check = await client.post(
            "/rate-limit/check",
            json=sealer.seal_json(_check_body(identity)).model_dump(),
        )
        record = await client.post(
            "/rate-limit/record",
            json=sealer.seal_json(_record_body(identity)).model_dump(),
        )

        assert check.status_code == 200
        assert check.json()["allowed"] is False
        assert check.json()["message"]
        assert check.json()["resetAt"]
        assert record.status_code == 503
        assert record.json() == {"detail": "storage_unavailable", "retryable": True}


class TestBlocking:
    @pytest.mark.asyncio
    async def test_identity_churn_from_one_ip_gets_blocked(
        self, client_for, config, sealer, make_signals
    ):
        strict = config.model_copy(
            update={
                "scoring": config.scoring.model_copy(
                    update={"suspicious_threshold": 10, "block_threshold": 20}
                )
            }
        )
        devices = [
            compose(
                make_signals(
                    hardware={"platform": "Win32", "hardware_concurrency": index + 2},
                    canvas={"render_hash": f"device-{index}"},
                    audio={"render_hash": f"device-{index}"},
                    fonts={"detected": [f"Font {index}"]},
                    storage={"persisted": bool(index % 2), "quota_bucket_mb": index},
                )
            )
            for index in range(3)
        ]
        headers = {"X-Forwarded-For": "198.51.100.23"}

        async with client_for(strict) as client:
            verdicts = []
            for device in devices:
                response = await client.post(
                    "/rate-limit/check",
                    json=sealer.seal_json(_check_body(device)).model_dump(),
                    headers=headers,
                )
                verdicts.append(response)

            assert [r.status_code for r in verdicts] == [200, 200, 403]
            blocked = verdicts[-1].json()
            assert blocked["blocked"] is True
            assert blocked["allowed"] is False
            assert blocked["remaining"] == 0
            assert blocked["resetAt"]

            # The block holds from any IP, before any quota work.
            again = await client.post(
                "/rate-limit/check",
                json=sealer.seal_json(_check_body(devices[-1])).model_dump(),
            )
            assert again.status_code == 403

            record = await client.post(
                "/rate-limit/record",
                json=sealer.seal_json(_record_body(devices[-1])).model_dump(),
            )
            assert record.json() == {"success": False}

    @pytest.mark.asyncio
    async def test_polling_check_never_blocks(self, client, sealer, make_signals):
        device_x = compose(make_signals())
        siblings = [
            compose(
                make_signals(
                    audio={"render_hash": f"sibling-{index}"},
                    fonts={"detected": [f"Font {index}"]},
                    storage={"local_storage": False, "quota_bucket_mb": index},
                )
            )
            for index in range(2)
        ]
        for sibling in siblings:
            await client.post(
                "/rate-limit/record",
                json=sealer.seal_json(_record_body(sibling)).model_dump(),
            )

        verdicts = []
        for _ in range(30):
            response = await client.post(
                "/rate-limit/check",
                json=sealer.seal_json(_check_body(device_x)).model_dump(),
            )
            verdicts.append((response.status_code, response.json()["remaining"]))

        assert verdicts == [(200, 1)] * 30


class TestPublicEndpoints:
    @pytest.mark.asyncio
    async def test_collector_script(self, client, config):
        response = await client.get("/rate-limit/collector.js")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/javascript")
        assert "global.DownloadGuard" in response.text
        assert f"const KDF_ITERATIONS = {config.envelope.kdf_iterations};" in response.text

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestMiddleware:
    @pytest.mark.asyncio
    async def test_api_key_is_required(self, client_for, config, sealer, make_signals):
        protected = config.model_copy(
            update={"api": config.api.model_copy(update={"api_key": "k" * 32})}
        )
        body = sealer.seal_json(_check_body(compose(make_signals()))).model_dump()
        async with client_for(protected) as client:
            missing = await client.post("/rate-limit/check", json=body)
            script = await client.get("/rate-limit/collector.js")
            health = await client.get("/health")
            allowed = await client.post(
                "/rate-limit/check",
                json=body,
                headers={"X-API-Key": "k" * 32},
            )
        assert missing.status_code == 401
        assert script.status_code == 200
        assert health.status_code == 200
        assert allowed.status_code == 200

    @pytest.mark.asyncio
    async def test_slow_request_times_out(self):
        app = FastAPI()
        app.add_middleware(RequestTimeoutMiddleware, timeout_seconds=0.05)

        @app.get("/slow")
        async def slow() -> dict[str, bool]:
            await asyncio.sleep(0.5)
            return {"done": True}

        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as client:
            response = await client.get("/slow")

        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
        assert response.json() == {"detail": "request_timeout", "retryable": True}
