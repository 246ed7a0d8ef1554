import logging
from datetime import UTC, datetime
from typing import TypeVar

from fastapi import Request
from pydantic import BaseModel
from pydantic import ValidationError as PayloadValidationError

from download_guard.api.modules.ratelimit.exceptions import (
    StorageError,
    ValidationError,
    storage_errors,
)
from download_guard.api.modules.ratelimit.models import BehaviorEvent, BlockEntry
from download_guard.api.modules.ratelimit.schema import (
    CheckPayload,
    CompositeIdentity,
    RecordPayload,
    RecordResponse,
    RequestEnvelope,
    VerdictResponse,
)
from download_guard.api.modules.ratelimit.services.envelope import EnvelopeCodec
from download_guard.api.modules.ratelimit.services.identity import verify
from download_guard.api.modules.ratelimit.services.ledger import (
    QuotaLedger,
    SimilarityClusterer,
    aggregate_usage,
)
from download_guard.api.modules.ratelimit.services.network import (
    RequestIpResolver,
    normalize_user_agent,
)
from download_guard.api.modules.ratelimit.services.scoring import (
    Blocklist,
    FraudScorer,
    VELOCITY_ACTION,
)
from download_guard.database.uow import UnitOfWork
from download_guard.services.logging import get_security_logger
from download_guard.settings import Config

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

PayloadT = TypeVar("PayloadT", bound=BaseModel)

BLOCKED_MESSAGE = "Access from this device has been blocked."
LIMIT_REACHED_MESSAGE = "Download limit reached for this device. Try again after the reset time."
UNAVAILABLE_MESSAGE = "Download checks are temporarily unavailable. Try again shortly."


class RateLimitFacadeService:
    """Ties the envelope, ledger, clusterer, scorer and blocklist together."""

    def __init__(
        self,
        config: Config,
        codec: EnvelopeCodec,
        ip_resolver: RequestIpResolver,
        ledger: QuotaLedger,
        clusterer: SimilarityClusterer,
        scorer: FraudScorer,
        blocklist: Blocklist,
        uow: UnitOfWork,
    ):
        self._config = config
        self._codec = codec
        self._ip_resolver = ip_resolver
        self._ledger = ledger
        self._clusterer = clusterer
        self._scorer = scorer
        self._blocklist = blocklist
        self._uow = uow

    async def _open(
        self,
        envelope: RequestEnvelope,
        model: type[PayloadT],
    ) -> PayloadT:
        plaintext = await self._codec.open(envelope)
        try:
            return model.model_validate_json(plaintext)
        except PayloadValidationError as exc:
            raise ValidationError("Envelope payload is malformed") from exc

    async def _log_event(
        self,
        identity: CompositeIdentity,
        action: str,
        request_ip: str | None,
        user_agent: str | None,
        now: datetime,
        elapsed_since_page_load_ms: int | None = None,
    ) -> None:
        with storage_errors("behavior log"):
            await self._uow.events.create(
                BehaviorEvent(
                    identity=identity.primary_hash,
                    ip_address=request_ip,
                    action=action,
                    elapsed_since_page_load_ms=elapsed_since_page_load_ms,
                    created_at=now,
                )
            )
            if request_ip:
                await self._uow.sightings.touch(
                    identity=identity.primary_hash,
                    ip_address=request_ip,
                    user_agent=user_agent,
                    now=now,
                )

    async def _commit(self) -> None:
        with storage_errors("commit"):
            await self._uow.commit()

    @staticmethod
    def _blocked_verdict(block: BlockEntry) -> VerdictResponse:
        return VerdictResponse(
            allowed=False,
            remaining=0,
            reset_at=block.expires_at,
            blocked=True,
            message=BLOCKED_MESSAGE,
        )

    async def check_request(
        self,
        request: Request,
        envelope: RequestEnvelope,
    ) -> VerdictResponse:
        return await self.check(
            envelope=envelope,
            request_ip=self._ip_resolver.get_request_ip(request),
            user_agent=normalize_user_agent(request.headers.get("user-agent")),
        )

    async def check(
        self,
        envelope: RequestEnvelope,
        request_ip: str | None,
        user_agent: str | None = None,
    ) -> VerdictResponse:
        """Decide whether the device may download. Fails closed on storage errors."""
        try:
            payload = await self._open(envelope, CheckPayload)
            identity = verify(payload.to_identity())
            verdict = await self.decide(identity, request_ip, user_agent)
            await self._commit()
        except StorageError:
            logger.exception("Metering storage failed during check; denying")
            await self._uow.rollback()
            return VerdictResponse(
                allowed=False,
                remaining=0,
                reset_at=datetime.now(UTC) + self._ledger.window,
                blocked=False,
                message=UNAVAILABLE_MESSAGE,
            )
        return verdict

    async def decide(
        self,
        identity: CompositeIdentity,
        request_ip: str | None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> VerdictResponse:
        now = now or datetime.now(UTC)
        metering = self._config.metering

        block = await self._blocklist.find_active(identity, now)
        if block:
            security_logger.info(
                "Denied blocked identity",
                extra={"identity": identity.primary_hash, "ip": request_ip},
            )
            return self._blocked_verdict(block)

        await self._log_event(identity, "check", request_ip, user_agent, now)

        if not metering.enabled:
            return VerdictResponse(
                allowed=True,
                remaining=metering.max_downloads,
                blocked=False,
            )

        record = await self._ledger.get_or_init(identity, request_ip, user_agent, now)
        similar = await self._clusterer.find_similar(
            identity,
            min_similarity_pct=metering.similarity_scan_pct,
            now=now,
        )
        used = aggregate_usage(
            record.download_count,
            similar,
            aggregate_pct=metering.similarity_aggregate_pct,
        )
        velocity = await self._scorer.action_velocity(identity, now)
        result = await self._scorer.score(
            identity,
            ip_address=request_ip,
            recent_similar_count=len(similar),
            recent_action_velocity=velocity,
            now=now,
        )

        if result.state == "blocked":
            reason = ",".join(signal.code for signal in result.signals)
            entries = await self._blocklist.block(
                identity,
                ip_address=request_ip,
                reason=f"score={result.score} {reason}"[:256],
                now=now,
                permanent=result.permanent,
            )
            await self._ledger.annotate(
                identity,
                suspicious_score=result.score,
                is_blocked=True,
                ip_address=request_ip,
                user_agent=user_agent,
                now=now,
            )
            return self._blocked_verdict(entries[0])

        if result.state == "suspicious":
            security_logger.warning(
                "Identity marked suspicious",
                extra={
                    "identity": identity.primary_hash,
                    "ip": request_ip,
                    "score": result.score,
                    "signals": [signal.code for signal in result.signals],
                },
            )

        await self._ledger.annotate(
            identity,
            suspicious_score=result.score,
            is_blocked=False,
            ip_address=request_ip,
            user_agent=user_agent,
            now=now,
        )

        remaining = max(0, metering.max_downloads - used)
        allowed = remaining > 0
        logger.debug(
            "Metering decision",
            extra={
                "identity": identity.primary_hash,
                "own": record.download_count,
                "aggregate": used,
                "similar": len(similar),
                "score": result.score,
                "allowed": allowed,
            },
        )
        return VerdictResponse(
            allowed=allowed,
            remaining=remaining,
            reset_at=record.reset_at,
            blocked=False,
            message=None if allowed else LIMIT_REACHED_MESSAGE,
        )

    async def record_request(
        self,
        request: Request,
        envelope: RequestEnvelope,
    ) -> RecordResponse:
        return await self.record(
            envelope=envelope,
            request_ip=self._ip_resolver.get_request_ip(request),
            user_agent=normalize_user_agent(request.headers.get("user-agent")),
        )

    async def record(
        self,
        envelope: RequestEnvelope,
        request_ip: str | None,
        user_agent: str | None = None,
    ) -> RecordResponse:
        """Count one completed download against the identity."""
        payload = await self._open(envelope, RecordPayload)
        identity = verify(payload.to_identity())
        now = datetime.now(UTC)

        try:
            block = await self._blocklist.find_active(identity, now)
            if block:
                security_logger.warning(
                    "Refused to record usage for blocked identity",
                    extra={"identity": identity.primary_hash, "ip": request_ip},
                )
                return RecordResponse(success=False)

            await self._ledger.consume(identity, request_ip, user_agent, now)
            await self._log_event(
                identity,
                VELOCITY_ACTION,
                request_ip,
                user_agent,
                now,
                elapsed_since_page_load_ms=payload.elapsed_since_page_load_ms,
            )
            await self._commit()
        except StorageError:
            logger.exception("Metering storage failed during record")
            await self._uow.rollback()
            raise
        return RecordResponse(success=True)


__all__ = ("RateLimitFacadeService",)
