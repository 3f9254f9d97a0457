"""Shared HTTP plumbing: response envelopes, middleware and versioned routers."""

from .middleware import (
    RequestLoggingMiddleware,
    ResponseStandardizationMiddleware,
    SecurityHeadersMiddleware,
)
from .response_models import (
    APIMetadata,
    ErrorDetail,
    ErrorResponse,
    HealthStatus,
    StandardResponse,
)
from .versioning import APIVersion, VersionedAPIRouter

__all__ = [
    "APIMetadata",
    "APIVersion",
    "ErrorDetail",
    "ErrorResponse",
    "HealthStatus",
    "RequestLoggingMiddleware",
    "ResponseStandardizationMiddleware",
    "SecurityHeadersMiddleware",
    "StandardResponse",
    "VersionedAPIRouter",
]
