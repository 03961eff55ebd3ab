"""Monitoring and observability package."""
from .health import HealthCheck, HealthCheckError
from .logging import get_logger, payment_context, setup_logging
from .metrics import metrics

__all__ = [
    "metrics",
    "get_logger",
    "payment_context",
    "setup_logging",
    "HealthCheck",
    "HealthCheckError",
]
