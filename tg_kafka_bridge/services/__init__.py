"""
Services layer for tg-kafka-bridge.

Contains the publishing, acknowledgment and reconnect machinery and the
bridge service that orchestrates them.
"""

from .ack_coordinator import AckCoordinator
from .bridge_service import BridgeService
from .normalizer import DedupWindow, EventNormalizer
from .publish_pipeline import PublishPipeline
from .reconnect_supervisor import BackoffPolicy, ConnectionState, ReconnectSupervisor

__all__ = [
    "AckCoordinator",
    "BackoffPolicy",
    "BridgeService",
    "ConnectionState",
    "DedupWindow",
    "EventNormalizer",
    "PublishPipeline",
    "ReconnectSupervisor"
]
