"""Monitoring: structured logging, Prometheus metrics and health checks."""
from .health import HealthCheck, HealthCheckError
from .logging import setup_logging
from .metrics import MetricsCollector

__all__ = ["HealthCheck", "HealthCheckError", "MetricsCollector", "setup_logging"]
