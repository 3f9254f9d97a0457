"""Observability stack for the feature store backend."""

from .config import (
    LoggingConfig,
    MetricsConfig,
    ObservabilityConfig,
    get_observability_config,
)
from .logging import configure_structured_logging, set_correlation_id
from .metrics import FeatureStoreMetrics, get_metrics

__all__ = [
    "FeatureStoreMetrics",
    "LoggingConfig",
    "MetricsConfig",
    "ObservabilityConfig",
    "configure_structured_logging",
    "get_metrics",
    "get_observability_config",
    "set_correlation_id",
]
