from collections.abc import AsyncIterator

from dishka import AsyncContainer, Provider, Scope, make_async_container, provide
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from download_guard.api.modules.ratelimit.service import RateLimitFacadeService
from download_guard.api.modules.ratelimit.services.envelope import (
    DatabaseNonceStore,
    EnvelopeCodec,
    InMemoryNonceStore,
    NonceStore,
)
from download_guard.api.modules.ratelimit.services.ledger import (
    QuotaLedger,
    SimilarityClusterer,
)
from download_guard.api.modules.ratelimit.services.network import RequestIpResolver
from download_guard.api.modules.ratelimit.services.scoring import (
    Blocklist,
    FraudScorer,
)
from download_guard.database import create_engine, create_session_factory
from download_guard.database.uow import UnitOfWork
from download_guard.settings import Config, get_config


class AppProvider(Provider):
    """Application provider for dependency injection."""

    def __init__(self, config: Config | None = None):
        super().__init__()
        self._config = config

    @provide(scope=Scope.APP)
    def get_config(self) -> Config:
        return self._config or get_config()


class DatabaseProvider(Provider):
    """Engine and session factory per application, session per request."""

    @provide(scope=Scope.APP)
    async def get_engine(self, config: Config) -> AsyncIterator[AsyncEngine]:
        engine = create_engine(config.database_url)
        yield engine
        await engine.dispose()

    @provide(scope=Scope.APP)
    def get_session_factory(
        self,
        engine: AsyncEngine,
    ) -> async_sessionmaker[AsyncSession]:
        return create_session_factory(engine)

    @provide(scope=Scope.REQUEST)
    async def get_session(
        self,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    @provide(scope=Scope.REQUEST)
    def get_uow(self, session: AsyncSession) -> UnitOfWork:
        return UnitOfWork(session)


class ServicesProvider(Provider):
    """Services provider for dependency injection."""

    @provide(scope=Scope.APP)
    def get_nonce_store(
        self,
        config: Config,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> NonceStore:
        if config.envelope.nonce_backend == "memory":
            return InMemoryNonceStore()
        return DatabaseNonceStore(session_factory)

    @provide(scope=Scope.APP)
    def get_envelope_codec(self, config: Config, nonce_store: NonceStore) -> EnvelopeCodec:
        return EnvelopeCodec(
            secret=config.envelope.secret,
            kdf_iterations=config.envelope.kdf_iterations,
            nonce_store=nonce_store,
            freshness_window_seconds=config.envelope.freshness_window_seconds,
            clock_skew_seconds=config.envelope.clock_skew_seconds,
        )

    @provide(scope=Scope.APP)
    def get_request_ip_resolver(self, config: Config) -> RequestIpResolver:
        return RequestIpResolver(config)

    @provide(scope=Scope.REQUEST)
    def get_quota_ledger(self, config: Config, uow: UnitOfWork) -> QuotaLedger:
        return QuotaLedger(uow, config.metering)

    @provide(scope=Scope.REQUEST)
    def get_similarity_clusterer(
        self,
        config: Config,
        uow: UnitOfWork,
    ) -> SimilarityClusterer:
        return SimilarityClusterer(uow, config.metering)

    @provide(scope=Scope.REQUEST)
    def get_fraud_scorer(self, config: Config, uow: UnitOfWork) -> FraudScorer:
        return FraudScorer(uow, config.scoring)

    @provide(scope=Scope.REQUEST)
    def get_blocklist(self, config: Config, uow: UnitOfWork) -> Blocklist:
        return Blocklist(uow, config.scoring)

    @provide(scope=Scope.REQUEST)
    def get_rate_limit_facade_service(
        self,
        config: Config,
        codec: EnvelopeCodec,
        request_ip_resolver: RequestIpResolver,
        ledger: QuotaLedger,
        clusterer: SimilarityClusterer,
        scorer: FraudScorer,
        blocklist: Blocklist,
        uow: UnitOfWork,
    ) -> RateLimitFacadeService:
        return RateLimitFacadeService(
            config=config,
            codec=codec,
            ip_resolver=request_ip_resolver,
            ledger=ledger,
            clusterer=clusterer,
            scorer=scorer,
            blocklist=blocklist,
            uow=uow,
        )


def get_async_container(config: Config | None = None) -> AsyncContainer:
    return make_async_container(
        AppProvider(config),
        DatabaseProvider(),
        ServicesProvider(),
    )
