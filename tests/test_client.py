import pytest

from download_guard.api.modules.ratelimit.exceptions import (
    DecryptionError,
    ValidationError,
)
from download_guard.api.modules.ratelimit.schema import CompositeIdentity
from download_guard.api.modules.ratelimit.services.identity import compose
from download_guard.clients.metering import MeteringClient


class TestMeteringClient:
    @pytest.mark.asyncio
    async def test_check_and_record_round(self, metering_client, make_signals):
        identity = compose(make_signals())

        before = await metering_client.check(identity)
        recorded = await metering_client.record(identity, elapsed_since_page_load_ms=900)
        after = await metering_client.check(identity)

        assert before.allowed
        assert before.remaining == 3
        assert before.reset_at is not None
        assert recorded.success
        assert after.remaining == 2

    @pytest.mark.asyncio
    async def test_quota_exhaustion(self, metering_client, make_signals):
        identity = compose(make_signals())
        for _ in range(3):
            await metering_client.record(identity)

        verdict = await metering_client.check(identity)

        assert not verdict.allowed
        assert verdict.remaining == 0
        assert not verdict.blocked

    @pytest.mark.asyncio
    async def test_server_errors_raise_typed_exceptions(self, metering_client, make_signals):
        identity = compose(make_signals())
        forged = CompositeIdentity(primary_hash="0" * 64, components=identity.components)

        with pytest.raises(ValidationError):
            await metering_client.check(forged)

    @pytest.mark.asyncio
    async def test_wrong_secret_raises(self, client, make_sealer, make_signals):
        metering_client = MeteringClient(client, make_sealer(secret="not-the-server-secret"))

        with pytest.raises(DecryptionError):
            await metering_client.check(compose(make_signals()))
