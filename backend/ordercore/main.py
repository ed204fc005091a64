import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ordercore.api.v1 import api_router
from ordercore.core.config import settings
from ordercore.core.errors import CoreError
from ordercore.core.logging_config import configure_logging
from ordercore.core.redis_client import close_redis
from ordercore.core.sentry import init_sentry
from ordercore.middleware import RequestLoggingMiddleware
from ordercore.schemas.error import ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_redis()


def _error_response(status_code: int, payload: ErrorResponse, headers: dict[str, str] | None = None) -> JSONResponse:
    content = jsonable_encoder(payload.model_dump())
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    init_sentry()
    tags_metadata = [
        {"name": "orders", "description": "Order intake, tracking and fulfillment"},
        {"name": "payments", "description": "Payment provider webhooks"},
        {"name": "refunds", "description": "Refund requests and settlement"},
        {"name": "store-credit", "description": "Store-credit ledger"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        code = exc.code if isinstance(exc, CoreError) else None
        data = exc.data if isinstance(exc, CoreError) else None
        retryable = exc.retryable if isinstance(exc, CoreError) else False
        payload = ErrorResponse(detail=exc.detail, code=code, data=data, retryable=retryable)
        return _error_response(exc.status_code, payload, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return _error_response(422, payload)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_error",
            extra={"path": request.url.path, "method": request.method},
        )
        payload = ErrorResponse(detail="Internal server error", code="internal_error")
        return _error_response(500, payload)

    return app


app = get_application()
