"""
Ports (interfaces) for tg-kafka-bridge.
High-level services depend on these abstractions, adapters implement them.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Sequence

from .dto import Checkpoint, Envelope, InboundEvent


class UpdateSource(ABC):
    """
    Interface for the chat-bot update feed.
    Can be implemented for Bot API long polling, webhooks, etc.
    """

    source_id: str
    # Updates skipped because they could not be parsed
    malformed_count: int = 0

    @abstractmethod
    async def connect(self) -> None:
        """
        Connect to the feed and validate credentials.

        Raises:
            SourceUnavailable: If the feed cannot be reached
        """
        pass

    @abstractmethod
    def poll(self) -> AsyncIterator[InboundEvent]:
        """
        Perform one poll of the feed.

        Yields:
            Inbound events in source order; the sequence is finite per call

        Raises:
            SourceUnavailable: On connection loss
        """
        pass

    @abstractmethod
    def resume_from(self, checkpoint: Optional[Checkpoint]) -> None:
        """
        Position the feed right after a persisted checkpoint.

        Args:
            checkpoint: Last persisted checkpoint, or None to start fresh
        """
        pass

    @abstractmethod
    def confirm(self, checkpoint: Checkpoint) -> None:
        """
        Tell the feed that everything up to the checkpoint is durable.

        Feeds that drop delivered items upstream (such as getUpdates
        offsets) must not do so for anything past the last confirmed
        checkpoint.

        Args:
            checkpoint: Checkpoint just persisted
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the feed and release connections."""
        pass


class PublishTransport(ABC):
    """
    Interface for the append-only log the bridge publishes to.
    Can be implemented for Kafka, Redis Streams, etc.
    """

    @abstractmethod
    async def connect(self) -> None:
        """
        Connect to the log.

        Raises:
            PublishTransientFailure: If the log is temporarily unreachable
        """
        pass

    @abstractmethod
    async def send_batch(self, envelopes: Sequence[Envelope]) -> List[str]:
        """
        Durably append a batch of envelopes, preserving their order.

        Args:
            envelopes: Envelopes of a single source in sequence order

        Returns:
            One location (offset or stream id) per envelope

        Raises:
            PublishTransientFailure: Retryable failure
            PublishError: Non-retryable failure
        """
        pass

    @abstractmethod
    async def check_health(self) -> bool:
        """
        Check if the transport is healthy and can accept records.

        Returns:
            True if healthy, False otherwise
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Flush and close the transport."""
        pass


class CheckpointStore(ABC):
    """
    Interface for persisting checkpoints.
    Writes must replace the previous value atomically.
    """

    @abstractmethod
    async def load(self, source_id: str) -> Optional[Checkpoint]:
        """
        Load the checkpoint of a source.

        Args:
            source_id: Feed identifier

        Returns:
            Persisted checkpoint or None if there is none
        """
        pass

    @abstractmethod
    async def save(self, checkpoint: Checkpoint) -> None:
        """
        Persist a checkpoint, atomically replacing the previous one.

        Raises:
            CheckpointError: If the write fails
        """
        pass

    async def close(self) -> None:
        """Release resources held by the store."""
        return None


class UpdateFilter(ABC):
    """
    Interface for filtering inbound events before normalization.
    """

    @abstractmethod
    def should_process(self, event: InboundEvent) -> bool:
        """
        Determine if an event should be forwarded.

        Args:
            event: Inbound event

        Returns:
            True if event should be forwarded, False otherwise
        """
        pass

    @abstractmethod
    def get_filter_reason(self, event: InboundEvent) -> Optional[str]:
        """
        Get reason why an event was filtered out.

        Args:
            event: Inbound event

        Returns:
            Filter reason string or None if event passed filters
        """
        pass


# Custom exceptions
class BridgeError(Exception):
    """Base class for bridge errors."""
    pass


class SourceUnavailable(BridgeError):
    """Raised when the update feed cannot be reached. Transient."""
    pass


class MalformedUpdate(BridgeError):
    """Raised when an update cannot be parsed. Skipped and logged."""
    pass


class Backpressure(BridgeError):
    """Raised when submit waited longer than the submit timeout for budget."""
    pass


class PublishTransientFailure(BridgeError):
    """Raised for retryable downstream failures."""

    def __init__(self, message: str, disconnected: bool = False):
        super().__init__(message)
        self.disconnected = disconnected


class PublishError(BridgeError):
    """Raised for non-retryable downstream failures."""
    pass


class PermanentPublishFailure(BridgeError):
    """
    Raised when an envelope failed permanently.
    Checkpoint advancement halts before it until an operator intervenes.
    """

    def __init__(self, source_id: str, sequence: int, envelope_id: str, reason: Optional[str] = None):
        self.source_id = source_id
        self.sequence = sequence
        self.envelope_id = envelope_id
        self.reason = reason
        super().__init__(
            f"Envelope {envelope_id} failed permanently: {reason or 'unknown error'}"
        )


class Degraded(BridgeError):
    """Raised when the reconnect ceiling is exhausted. Terminal."""
    pass


class CheckpointError(BridgeError):
    """Raised when a checkpoint cannot be loaded or persisted."""
    pass
