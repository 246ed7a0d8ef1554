from datetime import UTC, datetime, timedelta

import pytest

from download_guard.api.modules.ratelimit.models import BehaviorEvent
from download_guard.api.modules.ratelimit.services.identity import compose
from download_guard.api.modules.ratelimit.services.scoring import (
    Blocklist,
    FraudScorer,
)
from download_guard.settings import ScoringConfig


@pytest.fixture
def scorer() -> FraudScorer:
    return FraudScorer(uow=None, config=ScoringConfig())


class TestFraudScorerWeigh:
    def test_quiet_identity_is_clean(self, scorer):
        result = scorer.weigh(
            ip_identity_count=1,
            recent_similar_count=0,
            recent_action_velocity=1,
        )
        assert result.score == 0
        assert result.state == "clean"
        assert result.signals == []

    def test_single_warning_stays_clean(self, scorer):
        result = scorer.weigh(
            ip_identity_count=3,
            recent_similar_count=0,
            recent_action_velocity=0,
        )
        assert result.score == 20
        assert result.state == "clean"
        assert [signal.code for signal in result.signals] == ["IP_IDENTITY_CHURN_WARN"]

    def test_soft_threshold_marks_suspicious(self, scorer):
        result = scorer.weigh(
            ip_identity_count=3,
            recent_similar_count=0,
            recent_action_velocity=10,
        )
        assert result.score == 35
        assert result.state == "suspicious"

    def test_hard_threshold_blocks(self, scorer):
        result = scorer.weigh(
            ip_identity_count=6,
            recent_similar_count=2,
            recent_action_velocity=0,
        )
        assert result.score == 55
        assert result.state == "blocked"
        assert not result.permanent
        assert {signal.code for signal in result.signals} == {
            "IP_IDENTITY_CHURN_CRITICAL",
            "SIMILARITY_CLUSTER_WARN",
        }

    def test_history_weight_is_capped(self, scorer):
        result = scorer.weigh(
            ip_identity_count=0,
            recent_similar_count=0,
            recent_action_velocity=0,
            prior_block_count=5,
        )
        assert result.score == 30
        assert result.signals[0].code == "BLOCK_HISTORY"

    def test_repeat_offender_is_blocked_permanently(self, scorer):
        result = scorer.weigh(
            ip_identity_count=3,
            recent_similar_count=0,
            recent_action_velocity=0,
            prior_block_count=3,
        )
        assert result.state == "blocked"
        assert result.permanent

    def test_score_is_capped_at_100(self, scorer):
        result = scorer.weigh(
            ip_identity_count=10,
            recent_similar_count=5,
            recent_action_velocity=30,
            prior_block_count=2,
        )
        assert result.score == 100
        assert result.state == "blocked"


class TestFraudScorerScore:
    @pytest.mark.asyncio
    async def test_counts_identities_from_ip(self, uow, config, make_signals):
        now = datetime.now(UTC)
        identities = [
            compose(make_signals(canvas={"render_hash": f"device-{index}"}))
            for index in range(3)
        ]
        for identity in identities:
            await uow.sightings.touch(identity.primary_hash, "198.51.100.7", None, now)
        await uow.sightings.touch(identities[0].primary_hash, "198.51.100.7", None, now)

        scorer = FraudScorer(uow, config.scoring)
        result = await scorer.score(
            identities[0],
            ip_address="198.51.100.7",
            recent_similar_count=0,
            recent_action_velocity=0,
            now=now,
        )

        assert result.score == config.scoring.ip_churn_warn_weight
        assert result.signals[0].code == "IP_IDENTITY_CHURN_WARN"

    @pytest.mark.asyncio
    async def test_unknown_ip_skips_churn(self, uow, config, make_signals):
        scorer = FraudScorer(uow, config.scoring)
        result = await scorer.score(
            compose(make_signals()),
            ip_address=None,
            recent_similar_count=0,
            recent_action_velocity=0,
        )
        assert result.score == 0

    @pytest.mark.asyncio
    async def test_prior_blocks_feed_history(self, uow, config, make_signals):
        identity = compose(make_signals())
        now = datetime.now(UTC)
        blocklist = Blocklist(uow, config.scoring)
        await blocklist.block(identity, None, "test", now=now - timedelta(days=2))

        scorer = FraudScorer(uow, config.scoring)
        result = await scorer.score(
            identity,
            ip_address=None,
            recent_similar_count=0,
            recent_action_velocity=0,
            now=now,
        )

        assert result.score == config.scoring.history_weight_per_block

    @pytest.mark.asyncio
    async def test_velocity_counts_recorded_downloads_only(self, uow, config, make_signals):
        identity = compose(make_signals())
        now = datetime.now(UTC)
        for action in ["check"] * 40 + ["record"] * 2:
            await uow.events.create(
                BehaviorEvent(
                    identity=identity.primary_hash,
                    ip_address="198.51.100.7",
                    action=action,
                    created_at=now - timedelta(seconds=5),
                )
            )
        await uow.events.create(
            BehaviorEvent(
                identity=identity.primary_hash,
                ip_address="198.51.100.7",
                action="record",
                created_at=now - timedelta(minutes=5),
            )
        )

        scorer = FraudScorer(uow, config.scoring)

        assert await scorer.action_velocity(identity, now) == 2


class TestBlocklist:
    @pytest.mark.asyncio
    async def test_block_covers_identity_and_hardware(self, uow, config, make_signals):
        blocklist = Blocklist(uow, config.scoring)
        identity = compose(make_signals())
        now = datetime.now(UTC)

        entries = await blocklist.block(identity, "203.0.113.9", "score=55", now=now)

        assert [entry.kind for entry in entries] == ["identity", "hardware"]
        assert entries[0].target == identity.primary_hash
        assert entries[1].target == identity.components["hardware"]
        assert entries[0].expires_at == now + timedelta(hours=24)
        assert await blocklist.find_active(identity, now) is not None

    @pytest.mark.asyncio
    async def test_same_hardware_is_blocked(self, uow, config, make_signals):
        blocklist = Blocklist(uow, config.scoring)
        identity = compose(make_signals())
        # Cleared storage, new browser profile, same machine.
        evader = compose(
            make_signals(
                canvas={"render_hash": "fresh"},
                storage={"local_storage": False, "private_mode": True},
                fonts={"detected": ["Arial"]},
            )
        )
        now = datetime.now(UTC)
        await blocklist.block(identity, None, "score=55", now=now)

        block = await blocklist.find_active(evader, now)

        assert block is not None
        assert block.kind == "hardware"

    @pytest.mark.asyncio
    async def test_unrelated_device_is_not_blocked(self, uow, config, make_signals):
        blocklist = Blocklist(uow, config.scoring)
        now = datetime.now(UTC)
        await blocklist.block(compose(make_signals()), None, "score=55", now=now)

        other = compose(
            make_signals(
                hardware={"platform": "Win32", "hardware_concurrency": 4},
                canvas={"render_hash": "other"},
            )
        )
        assert await blocklist.find_active(other, now) is None

    @pytest.mark.asyncio
    async def test_temporary_block_expires(self, uow, config, make_signals):
        blocklist = Blocklist(uow, config.scoring)
        identity = compose(make_signals())
        now = datetime.now(UTC)
        await blocklist.block(identity, None, "score=55", now=now - timedelta(hours=25))

        assert await blocklist.find_active(identity, now) is None
        assert await blocklist.count_prior(identity, since=now - timedelta(days=30)) == 1

    @pytest.mark.asyncio
    async def test_permanent_block_never_expires(self, uow, config, make_signals):
        blocklist = Blocklist(uow, config.scoring)
        identity = compose(make_signals())
        now = datetime.now(UTC)
        await blocklist.block(
            identity, None, "repeat", now=now - timedelta(days=365), permanent=True
        )

        block = await blocklist.find_active(identity, now)

        assert block is not None
        assert block.is_permanent
        assert block.expires_at is None

    @pytest.mark.asyncio
    async def test_unavailable_components_are_not_blocked(self, uow, config, make_signals):
        blocklist = Blocklist(uow, config.scoring)
        identity = compose(make_signals(hardware=None))
        entries = await blocklist.block(identity, None, "score=55")
        assert [entry.kind for entry in entries] == ["identity"]
