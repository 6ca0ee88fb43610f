"""Logging, metrics and health checks for the payment gateway."""
from .health import HealthCheck, HealthCheckError
from .logging import bind_request_context, setup_logging
from .metrics import MetricsCollector, metrics

__all__ = [
    "metrics",
    "MetricsCollector",
    "setup_logging",
    "bind_request_context",
    "HealthCheck",
    "HealthCheckError",
]
