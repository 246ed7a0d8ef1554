from dishka import FromDishka
from dishka.integrations.fastapi import DishkaRoute
from fastapi import APIRouter, Request, Response, status

from download_guard.api.modules.ratelimit.schema import (
    ErrorResponse,
    RecordResponse,
    RequestEnvelope,
    VerdictResponse,
)
from download_guard.api.modules.ratelimit.service import RateLimitFacadeService
from download_guard.api.modules.ratelimit.services.public.collector import (
    build_collector_script,
)
from download_guard.settings import Config

router = APIRouter(route_class=DishkaRoute)

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@router.post(
    "/check",
    response_model=VerdictResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    status_code=200,
    responses={403: {"model": VerdictResponse}, **_ERROR_RESPONSES},
)
async def check_rate_limit(
    request: Request,
    response: Response,
    envelope: RequestEnvelope,
    facade: FromDishka[RateLimitFacadeService],
) -> VerdictResponse:
    verdict = await facade.check_request(request=request, envelope=envelope)
    if verdict.blocked:
        response.status_code = status.HTTP_403_FORBIDDEN
    return verdict


@router.post(
    "/record",
    response_model=RecordResponse,
    status_code=200,
    responses=_ERROR_RESPONSES,
)
async def record_usage(
    request: Request,
    envelope: RequestEnvelope,
    facade: FromDishka[RateLimitFacadeService],
) -> RecordResponse:
    return await facade.record_request(request=request, envelope=envelope)


@router.get("/collector.js", status_code=200)
async def get_collector_script(config: FromDishka[Config]) -> Response:
    script = build_collector_script(
        secret=config.envelope.secret,
        kdf_iterations=config.envelope.kdf_iterations,
    )
    return Response(content=script, media_type="application/javascript")
