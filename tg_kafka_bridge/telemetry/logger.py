"""
Logging setup for tg-kafka-bridge.

Log lines are single JSON objects so the bridge can be traced from poll to
checkpoint by `source_id`, `sequence` and `correlation_id`. Metric events
go through the `metrics` logger with a `metric_type` field.
"""

import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional


# Attributes every LogRecord carries; anything else came in through `extra`
_STANDARD_FIELDS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'exc_info', 'exc_text', 'stack_info',
    'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage',
    'taskName', 'message', 'asctime'
}

# Client libraries that log every request or heartbeat at INFO
NOISY_LOGGERS = ("aiokafka", "httpx", "httpcore", "redis", "asyncio")

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class JSONFormatter(logging.Formatter):
    """
    Renders a record as one JSON object per line.

    Fixed keys come first; fields passed through `extra` are appended
    unless `include_extra` is off.
    """

    def __init__(
        self,
        service_name: str = "tg-kafka-bridge",
        include_extra: bool = True
    ):
        """
        Args:
            service_name: Value of the `service` key on every line
            include_extra: Copy `extra` fields into the output
        """
        super().__init__()
        self.service_name = service_name
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        entry = self._base_entry(record)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            entry.update(self._extra_fields(record))

        return json.dumps(entry, default=self._json_default)

    def _base_entry(self, record: logging.LogRecord) -> Dict[str, Any]:
        return {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

    @staticmethod
    def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
        return {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_FIELDS and not key.startswith('_')
        }

    @staticmethod
    def _json_default(obj: Any) -> str:
        """Fallback for datetimes, raw payload bytes and anything else."""
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, bytes):
            return obj.decode("utf-8", errors="replace")
        return str(obj)


class CorrelationFilter(logging.Filter):
    """
    Stamps `correlation_id` on records that lack one.

    Records about a single envelope are correlated by its envelope id
    (`<source_id>:<sequence>`), so every line about it shares one id.
    Other records get the static id, or a generated one.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        """
        Args:
            correlation_id: Static id for records without an envelope
        """
        super().__init__()
        self.correlation_id = correlation_id

    def filter(self, record: logging.LogRecord) -> bool:
        if hasattr(record, 'correlation_id'):
            return True

        envelope_id = getattr(record, 'envelope_id', None)
        if envelope_id is None and hasattr(record, 'source_id') and hasattr(record, 'sequence'):
            envelope_id = f"{record.source_id}:{record.sequence}"

        record.correlation_id = envelope_id or self.correlation_id or self._generate_correlation_id()
        return True

    @staticmethod
    def _generate_correlation_id() -> str:
        return f"tkb-{int(time.time() * 1000)}"


def _build_handler(service_name: str, enable_json: bool, enable_correlation: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if enable_json:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(fmt=PLAIN_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))

    if enable_correlation:
        handler.addFilter(CorrelationFilter())
    return handler


def setup_logging(
    level: str = "INFO",
    service_name: str = "tg-kafka-bridge",
    enable_json: bool = True,
    enable_correlation: bool = True,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS
) -> None:
    """
    Replace the root handlers with a single stdout handler.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR), case-insensitive
        service_name: Service name stamped on JSON lines
        enable_json: JSON lines instead of the plain text format
        enable_correlation: Attach a CorrelationFilter
        quiet_loggers: Loggers capped at WARNING

    Raises:
        ValueError: If the level name is unknown
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")

    logging.root.setLevel(numeric_level)
    logging.root.handlers.clear()
    logging.root.addHandler(_build_handler(service_name, enable_json, enable_correlation))

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "component": "logger",
            "level": level.upper(),
            "json_enabled": enable_json,
            "correlation_enabled": enable_correlation
        }
    )


class MetricsLogger:
    """
    Emits metric events as INFO lines tagged with `metric_type`.
    """

    def __init__(self, logger_name: str = "metrics"):
        self.logger = logging.getLogger(logger_name)

    def _emit(self, message: str, metric_type: str, **fields: Any) -> None:
        self.logger.info(message, extra={"metric_type": metric_type, **fields})

    def log_batch_published(
        self,
        source_id: str,
        batch_size: int,
        batch_bytes: int,
        duration_ms: float,
        success: bool,
        attempts: int = 1,
        error: Optional[str] = None
    ) -> None:
        """
        Record the outcome of one batch.

        Args:
            source_id: Feed the batch belongs to
            batch_size: Envelopes in the batch
            batch_bytes: Payload bytes in the batch
            duration_ms: Time from first attempt to terminal status
            success: Whether the batch was acknowledged
            attempts: Attempts made, first one included
            error: Last error when the batch failed
        """
        self._emit(
            "Batch publish",
            "batch_publish",
            source_id=source_id,
            batch_size=batch_size,
            batch_bytes=batch_bytes,
            duration_ms=round(duration_ms, 2),
            success=success,
            attempts=attempts,
            error=error
        )

    def log_checkpoint_persisted(
        self,
        source_id: str,
        sequence: int,
        token: str,
        duration_ms: float
    ) -> None:
        self._emit(
            "Checkpoint persisted",
            "checkpoint_persisted",
            source_id=source_id,
            sequence=sequence,
            token=token,
            duration_ms=round(duration_ms, 2)
        )

    def log_backpressure(self, source_id: str, inflight_count: int, inflight_bytes: int) -> None:
        """Record a submit that found the in-flight budget exhausted."""
        self._emit(
            "Backpressure",
            "backpressure",
            source_id=source_id,
            inflight_count=inflight_count,
            inflight_bytes=inflight_bytes
        )

    def log_reconnect(
        self,
        target: str,
        attempt: int,
        delay_ms: float,
        error: Optional[str] = None
    ) -> None:
        """
        Record a reconnect backoff.

        Args:
            target: Supervised connection ("source", "transport")
            attempt: 0-based attempt the delay precedes
            delay_ms: Backoff delay, jitter included
            error: Error that caused the disconnect
        """
        self._emit(
            f"Reconnect: {target}",
            "reconnect",
            target=target,
            attempt=attempt,
            delay_ms=round(delay_ms, 2),
            error=error
        )

    def log_service_stats(self, stats: dict) -> None:
        self._emit("Service statistics", "service_stats", **stats)
