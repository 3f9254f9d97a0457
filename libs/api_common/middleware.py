"""Middleware for request correlation, logging and error envelopes."""

import time
from uuid import uuid4

import structlog
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from libs.observability.logging import set_correlation_id

from .response_models import APIMetadata, ErrorDetail, ErrorResponse

logger = structlog.get_logger(__name__)


class ResponseStandardizationMiddleware(BaseHTTPMiddleware):
    """Tag responses with request metadata and wrap unhandled errors."""

    def __init__(self, app, version: str = "v1"):
        super().__init__(app)
        self.version = version

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        set_correlation_id(request_id)

        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled error while serving request",
                method=request.method,
                path=request.url.path,
                request_id=request_id,
            )
            return self._create_error_response(
                request_id=request_id,
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                error_code="INTERNAL_SERVER_ERROR",
                message="An unexpected error occurred",
            )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Version"] = self.version
        response.headers["X-Response-Time"] = str(
            round((time.perf_counter() - start_time) * 1000, 2)
        )
        return response

    def _create_error_response(
        self,
        request_id: str,
        status_code: int,
        error_code: str,
        message: str,
    ) -> JSONResponse:
        """Create a standardized error response."""
        error_response = ErrorResponse(
            error=ErrorDetail(code=error_code, message=message),
            metadata=APIMetadata(request_id=request_id, version=self.version),
        )

        return JSONResponse(
            status_code=status_code,
            content=error_response.model_dump(mode="json"),
            headers={
                "X-Request-ID": request_id,
                "X-API-Version": self.version,
            },
        )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging API requests and responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.perf_counter()

        response = await call_next(request)

        logger.info(
            "Request served",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            request_id=getattr(request.state, "request_id", None),
        )

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response
