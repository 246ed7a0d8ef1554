from fastapi import APIRouter

health_router = APIRouter(tags=["Health"])


@health_router.get("/health", include_in_schema=False)
async def health() -> dict[str, str]:
    return {"status": "ok"}


def register_routers(router: APIRouter) -> None:
    from download_guard.api.modules.ratelimit.routes import router as ratelimit_router

    router.include_router(ratelimit_router, prefix="/rate-limit", tags=["Rate limit"])
    router.include_router(health_router)
