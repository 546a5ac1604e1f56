"""
Telemetry for tg-kafka-bridge: structured logging and metrics.
"""

from .logger import setup_logging, JSONFormatter, CorrelationFilter, MetricsLogger

__all__ = ["setup_logging", "JSONFormatter", "CorrelationFilter", "MetricsLogger"]
