import logging

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend import __version__, load_all_models
from backend.core.conf import settings
from backend.core.log import setup_logging
from backend.database.db import create_tables
from backend.database.redis import redis_client
from backend.src.billing.shared.exceptions import (
    BillingError,
    DebitFailedError,
    GuardedActionFailedError,
    InsufficientBalanceError,
    InsufficientCreditsError,
    InvalidActionParametersError,
    RefundFailedError,
    WebhookError,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = 'Something went wrong. Please try again later.'

# Errors whose own message is safe to show even though the user cannot act on it
_SELF_DESCRIBING_ERRORS = (DebitFailedError, GuardedActionFailedError, RefundFailedError)


def _status_for(exc: BillingError) -> int:
    if isinstance(exc, (InvalidActionParametersError, WebhookError)):
        return 400
    if isinstance(exc, (InsufficientCreditsError, InsufficientBalanceError)):
        return 402
    return 500


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """
    Render a billing error.

    Actionable errors are returned with their message and details. Anything
    else is logged with its cause and returned with a reference id only.
    """
    status_code = _status_for(exc)
    if exc.user_actionable:
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    cause = exc.__cause__
    logger.error(
        f'[API] {request.method} {request.url.path} failed with {exc.code} '
        f'(ref {exc.reference_id}): {exc.message} details={exc.details} cause={cause!r}',
        exc_info=exc if status_code >= 500 else None,
    )
    message = exc.message if isinstance(exc, _SELF_DESCRIBING_ERRORS) else GENERIC_ERROR_MESSAGE
    return JSONResponse(
        status_code=status_code,
        content={'error': exc.code, 'message': message, 'reference_id': exc.reference_id},
    )


@asynccontextmanager
async def register_init(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    启动初始化

    :param app: FastAPI 应用实例
    :return:
    """
    from backend.src.billing.credits.integration import billing_integration

    # 创建数据库表
    await create_tables()
    if settings.CREDIT_BALANCE_CACHE_ENABLED:
        await redis_client.open()
    logger.info(f'[APP] {settings.FASTAPI_TITLE} v{__version__} started ({settings.ENVIRONMENT})')

    yield

    # 等待进行中的扣费结算完成
    pending = billing_integration.orchestrator.pending
    if pending:
        logger.info(f'[APP] Waiting for {pending} in-flight credit settlements')
    await billing_integration.orchestrator.drain()
    if settings.CREDIT_BALANCE_CACHE_ENABLED:
        await redis_client.aclose()
    logger.info('[APP] Shutdown complete')


def register_app() -> FastAPI:
    """注册 FastAPI 应用"""
    setup_logging()
    load_all_models()

    app = FastAPI(
        title=settings.FASTAPI_TITLE,
        version=__version__,
        description=settings.FASTAPI_DESCRIPTION,
        docs_url=settings.FASTAPI_DOCS_URL,
        redoc_url=settings.FASTAPI_REDOC_URL,
        openapi_url=settings.FASTAPI_OPENAPI_URL,
        lifespan=register_init,
    )

    register_router(app)
    app.exception_handler(BillingError)(billing_exception_handler)

    return app


def register_router(app: FastAPI) -> None:
    """
    路由

    :param app: FastAPI 应用实例
    :return:
    """
    from backend.src.billing.endpoints import billing_router

    app.include_router(billing_router, prefix=settings.FASTAPI_API_V1_PATH)

    @app.get('/health', include_in_schema=False)
    async def health_check() -> dict:
        return {'status': 'ok'}
