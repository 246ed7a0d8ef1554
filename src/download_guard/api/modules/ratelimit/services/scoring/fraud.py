from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from download_guard.api.modules.ratelimit.exceptions import storage_errors
from download_guard.api.modules.ratelimit.schema import CompositeIdentity, ScoreSignal
from download_guard.api.modules.ratelimit.services.core import (
    IdentityState,
    create_signal,
    pick_tier,
    state_for_score,
)
from download_guard.database.uow import UnitOfWork
from download_guard.settings import ScoringConfig

IDENTITY_BLOCK_KIND = "identity"
# Velocity counts completed downloads only.
VELOCITY_ACTION = "record"


@dataclass(slots=True)
class ScoreResult:
    score: int
    state: IdentityState
    signals: list[ScoreSignal] = field(default_factory=list)
    permanent: bool = False


class FraudScorer:
    """Rule-based suspicion score in ``[0, 100]``.

    Signals: identities seen from the same IP, action velocity of the
    identity, size of its similarity cluster and its block history.
    """

    def __init__(self, uow: UnitOfWork, config: ScoringConfig):
        self._uow = uow
        self._config = config
        self._ip_churn_tiers = [
            (
                config.ip_churn_critical_threshold,
                config.ip_churn_critical_weight,
                "IP_IDENTITY_CHURN_CRITICAL",
            ),
            (
                config.ip_churn_warn_threshold,
                config.ip_churn_warn_weight,
                "IP_IDENTITY_CHURN_WARN",
            ),
        ]
        self._velocity_tiers = [
            (
                config.velocity_critical_threshold,
                config.velocity_critical_weight,
                "ACTION_VELOCITY_CRITICAL",
            ),
            (
                config.velocity_warn_threshold,
                config.velocity_warn_weight,
                "ACTION_VELOCITY_WARN",
            ),
        ]
        self._cluster_tiers = [
            (
                config.cluster_critical_threshold,
                config.cluster_critical_weight,
                "SIMILARITY_CLUSTER_CRITICAL",
            ),
            (
                config.cluster_warn_threshold,
                config.cluster_warn_weight,
                "SIMILARITY_CLUSTER_WARN",
            ),
        ]

    def weigh(
        self,
        ip_identity_count: int,
        recent_similar_count: int,
        recent_action_velocity: int,
        prior_block_count: int = 0,
    ) -> ScoreResult:
        config = self._config
        signals: list[ScoreSignal] = []

        tier = pick_tier(ip_identity_count, self._ip_churn_tiers)
        if tier:
            _, weight, code = tier
            signals.append(
                create_signal(
                    code=code,
                    weight=weight,
                    message=(
                        f"{ip_identity_count} distinct devices seen from this IP in the "
                        f"last {config.ip_churn_window_minutes} minutes."
                    ),
                )
            )

        tier = pick_tier(recent_action_velocity, self._velocity_tiers)
        if tier:
            _, weight, code = tier
            signals.append(
                create_signal(
                    code=code,
                    weight=weight,
                    message=(
                        f"Device made {recent_action_velocity} requests in the last "
                        f"{config.velocity_window_seconds} seconds."
                    ),
                )
            )

        tier = pick_tier(recent_similar_count, self._cluster_tiers)
        if tier:
            _, weight, code = tier
            signals.append(
                create_signal(
                    code=code,
                    weight=weight,
                    message=(
                        f"{recent_similar_count} active devices share most of this "
                        "device's fingerprint."
                    ),
                )
            )

        if prior_block_count > 0:
            weight = min(
                prior_block_count * config.history_weight_per_block,
                config.history_max_weight,
            )
            if weight > 0:
                signals.append(
                    create_signal(
                        code="BLOCK_HISTORY",
                        weight=weight,
                        message=(
                            f"Device was blocked {prior_block_count} time(s) in the "
                            f"last {config.history_lookback_days} days."
                        ),
                    )
                )

        score = min(sum(signal.weight for signal in signals), 100)
        state = state_for_score(
            score=score,
            block_threshold=config.block_threshold,
            suspicious_threshold=config.suspicious_threshold,
        )
        return ScoreResult(
            score=score,
            state=state,
            signals=signals,
            permanent=(
                state == "blocked"
                and prior_block_count >= config.permanent_block_after
            ),
        )

    async def action_velocity(
        self,
        identity: CompositeIdentity,
        now: datetime | None = None,
    ) -> int:
        now = now or datetime.now(UTC)
        since = now - timedelta(seconds=self._config.velocity_window_seconds)
        with storage_errors("velocity lookup"):
            return await self._uow.events.count_since(
                identity.primary_hash,
                since,
                action=VELOCITY_ACTION,
            )

    async def score(
        self,
        identity: CompositeIdentity,
        ip_address: str | None,
        recent_similar_count: int,
        recent_action_velocity: int,
        now: datetime | None = None,
    ) -> ScoreResult:
        now = now or datetime.now(UTC)
        config = self._config
        with storage_errors("score lookup"):
            ip_identity_count = 0
            if ip_address:
                ip_identity_count = await self._uow.sightings.count_identities_for_ip(
                    ip_address,
                    since=now - timedelta(minutes=config.ip_churn_window_minutes),
                )
            prior_block_count = await self._uow.blocks.count_for_target(
                identity.primary_hash,
                kind=IDENTITY_BLOCK_KIND,
                since=now - timedelta(days=config.history_lookback_days),
            )
        return self.weigh(
            ip_identity_count=ip_identity_count,
            recent_similar_count=recent_similar_count,
            recent_action_velocity=recent_action_velocity,
            prior_block_count=prior_block_count,
        )


__all__ = ("IDENTITY_BLOCK_KIND", "VELOCITY_ACTION", "FraudScorer", "ScoreResult")
