"""
Adapters layer for tg-kafka-bridge.

Contains implementations of domain interfaces using external systems
like the Telegram Bot API, Kafka and Redis.
"""

from .bot_api_source import BotApiUpdateSource
from .checkpoint_store import FileCheckpointStore, RedisCheckpointStore
from .factory import TransportFactory
from .filters import (
    ChatAllowListFilter,
    CompositeUpdateFilter,
    TextMessageFilter,
    create_default_filter,
)
from .kafka_transport import KafkaTransport
from .redis_transport import RedisStreamTransport

__all__ = [
    "BotApiUpdateSource",
    "ChatAllowListFilter",
    "CompositeUpdateFilter",
    "FileCheckpointStore",
    "KafkaTransport",
    "RedisCheckpointStore",
    "RedisStreamTransport",
    "TextMessageFilter",
    "TransportFactory",
    "create_default_filter"
]
