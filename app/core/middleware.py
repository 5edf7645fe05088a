"""
HTTP middleware and exception handlers.

Each request runs under a correlation id taken from ``X-Correlation-ID`` or
freshly generated, and the id is echoed on every response, errors included.
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id and logs one line per request"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        cid = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = cid
        started = time.perf_counter()
        fields = {"method": request.method, "path": request.url.path}

        try:
            response = await call_next(request)
        except Exception as e:
            fields["duration_seconds"] = round(time.perf_counter() - started, 4)
            logger.error(f"{request.method} {request.url.path} raised", extra_data={**fields, "error": str(e)}, exc_info=True)
            raise

        fields["status_code"] = response.status_code
        fields["duration_seconds"] = round(time.perf_counter() - started, 4)
        if response.status_code >= 400:
            logger.warning(f"{request.method} {request.url.path} -> {response.status_code}", extra_data=fields)
        else:
            logger.info(f"{request.method} {request.url.path} -> {response.status_code}", extra_data=fields)

        response.headers[CORRELATION_HEADER] = cid
        return response


def _error_response(status_code: int, body: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers={CORRELATION_HEADER: get_correlation_id()})


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"{exc.error_code.value}: {exc.message}",
        extra_data={"error_code": exc.error_code.value, "details": exc.details, "path": request.url.path},
    )
    return _error_response(exc.status_code, exc.to_dict())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled {type(exc).__name__}",
        extra_data={"message": str(exc), "path": request.url.path},
        exc_info=True,
    )
    return _error_response(500, AppException("An unexpected error occurred", ErrorCode.INTERNAL_ERROR).to_dict())


def setup_middleware(app: FastAPI) -> None:
    app.add_middleware(RequestContextMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
