"""
Domain layer for tg-kafka-bridge.

Contains data models, interfaces and the error taxonomy.
"""

from .dto import (
    BridgeStats,
    Checkpoint,
    Envelope,
    InboundEvent,
    PublishResult,
    PublishStatus,
)
from .ports import (
    Backpressure,
    BridgeError,
    CheckpointError,
    CheckpointStore,
    Degraded,
    MalformedUpdate,
    PermanentPublishFailure,
    PublishError,
    PublishTransientFailure,
    PublishTransport,
    SourceUnavailable,
    UpdateFilter,
    UpdateSource,
)

__all__ = [
    # DTOs
    "BridgeStats",
    "Checkpoint",
    "Envelope",
    "InboundEvent",
    "PublishResult",
    "PublishStatus",

    # Ports (Interfaces)
    "CheckpointStore",
    "PublishTransport",
    "UpdateFilter",
    "UpdateSource",

    # Errors
    "Backpressure",
    "BridgeError",
    "CheckpointError",
    "Degraded",
    "MalformedUpdate",
    "PermanentPublishFailure",
    "PublishError",
    "PublishTransientFailure",
    "SourceUnavailable",
]
