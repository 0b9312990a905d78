import secrets
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .logging_config import get_logger
from .models import ErrorResponse, ReferralStats, RewardReferralsRequest, RewardReferralsResponse
from .service import (
    InvalidReferrerError,
    ReferralFetchError,
    ReferralRewardService,
    UnauthorizedError,
)
from .storage import InMemoryStorage, ReferralStore, StorageError

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def build_store(settings: Settings) -> ReferralStore:
    if settings.database_url:
        from .sql_storage import SqlReferralStore
        return SqlReferralStore.from_url(settings.database_url)
    logger.warning("in_memory_store_selected", reason="database_url not set")
    return InMemoryStorage()


def get_service(request: Request) -> ReferralRewardService:
    return request.app.state.service


def require_service_credential(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    expected = request.app.state.settings.service_role_key
    if credentials is None or not expected:
        raise UnauthorizedError("Unauthorized")
    if not secrets.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise UnauthorizedError("Unauthorized")


async def read_referrer_id(request: Request) -> Optional[str]:
    """Referrer id from a JSON object body; anything unreadable counts as missing."""
    try:
        payload = await request.json()
        body = RewardReferralsRequest.model_validate(payload)
    except (ValueError, ValidationError) as e:
        raise InvalidReferrerError("Missing referrer_id") from e
    return body.referrer_id


def create_app(settings: Optional[Settings] = None, store: Optional[ReferralStore] = None) -> FastAPI:
    settings = settings or get_settings()
    store = store if store is not None else build_store(settings)

    app = FastAPI(
        title="Referral Reward Settlement API",
        description="Settles referral rewards against referred users' completed deposits",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.service = ReferralRewardService.from_settings(settings, store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.exception_handler(UnauthorizedError)
    async def unauthorized_handler(request: Request, exc: UnauthorizedError):
        logger.warning("unauthorized_call_rejected", path=request.url.path)
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "Unauthorized"})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "referral-rewards"}

    @app.post(
        "/reward-referrals",
        response_model=RewardReferralsResponse,
        responses=ERROR_RESPONSES,
        dependencies=[Depends(require_service_credential)],
        openapi_extra={
            "requestBody": {
                "content": {"application/json": {"schema": RewardReferralsRequest.model_json_schema()}},
            }
        },
        tags=["Rewards"],
    )
    async def reward_referrals(
        request: Request,
        service: ReferralRewardService = Depends(get_service),
    ) -> RewardReferralsResponse:
        # Read after the credential dependency so unauthenticated calls never reach body parsing
        try:
            referrer_id = await read_referrer_id(request)
            result = await run_in_threadpool(service.settle, referrer_id)
        except InvalidReferrerError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except ReferralFetchError as e:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
        return RewardReferralsResponse(
            rewards_given=result.rewards_given,
            failed_referrals=result.failed_referrals,
        )

    @app.get(
        "/referrers/{referrer_id}/stats",
        response_model=ReferralStats,
        responses=ERROR_RESPONSES,
        dependencies=[Depends(require_service_credential)],
        tags=["Referrers"],
    )
    def referrer_stats(
        referrer_id: str,
        service: ReferralRewardService = Depends(get_service),
    ) -> ReferralStats:
        try:
            return service.stats(referrer_id)
        except InvalidReferrerError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except StorageError as e:
            logger.error("referrer_stats_failed", referrer_id=referrer_id, error=str(e))
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return app


if __name__ == "__main__":
    import uvicorn
    from .logging_config import configure_logging

    configure_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
