"""FastAPI plumbing shared by every storepay app."""

from time import perf_counter

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from storepay.common.config import settings
from storepay.common.errors import PaymentServiceUnavailable, StorefrontError
from storepay.common.logging import logger
from storepay.common.metrics import http_request_duration_seconds, http_requests_total


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject internal calls that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


async def storefront_error_handler(_: Request, exc: StorefrontError) -> JSONResponse:
    if exc.expected:
        logger.info("request rejected error=%s message=%s", type(exc).__name__, exc.message)
    else:
        logger.error("request failed error=%s message=%s", type(exc).__name__, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("storage failure path=%s error=%s", request.url.path, exc)
    return JSONResponse(
        status_code=PaymentServiceUnavailable.status_code,
        content={"success": False, "error": PaymentServiceUnavailable.message},
    )


async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("request validation failed errors=%s", len(exc.errors()))
    return JSONResponse(status_code=400, content={"success": False, "error": "Некорректный запрос"})


def install_http_handlers(app: FastAPI) -> None:
    """Request metrics middleware plus the `{success: false, error}` error shape."""

    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()
