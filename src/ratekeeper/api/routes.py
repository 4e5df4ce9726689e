from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ratekeeper.config import AlgorithmType, Settings
from ratekeeper.core.service import RateLimiterService

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    default_algorithm: str


class CheckRequest(BaseModel):
    key: str
    limit: int | None = None
    window_seconds: int | None = None
    algorithm: str | None = None


class CheckResponse(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: float | None = None
    algorithm: AlgorithmType
    fail_open: bool


def get_service(request: Request) -> RateLimiterService:
    return request.app.state.service


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    return HealthResponse(
        status="healthy",
        default_algorithm=get_app_settings(request).default_algorithm.value,
    )


@router.post("/api/v1/ratelimit/check", response_model=CheckResponse)
async def check_rate_limit(body: CheckRequest, request: Request):
    settings = get_app_settings(request)
    result = await get_service(request).check_limit(
        body.key,
        body.limit if body.limit is not None else settings.rate_limit_default,
        body.window_seconds if body.window_seconds is not None else settings.rate_limit_window,
        body.algorithm or settings.default_algorithm,
    )

    content = CheckResponse(
        allowed=result.is_allowed,
        limit=result.limit,
        remaining=result.remaining,
        reset_at=result.reset_at,
        retry_after=result.retry_after,
        algorithm=result.algorithm,
        fail_open=result.fail_open,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if result.is_allowed else status.HTTP_429_TOO_MANY_REQUESTS,
        content=content.model_dump(mode="json"),
        headers=result.headers(),
    )


@router.get("/api/v1/ratelimit/status")
async def rate_limit_status(key: str, algorithm: str, request: Request):
    return await get_service(request).get_status(key, algorithm)


@router.delete("/api/v1/ratelimit/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset_rate_limit(key: str, request: Request):
    await get_service(request).reset(key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
