"""
Event normalizer for tg-kafka-bridge.
Turns inbound events into envelopes and drops recent duplicates.
"""

import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional

from ..domain.dto import Checkpoint, Envelope, InboundEvent


logger = logging.getLogger(__name__)


class DedupWindow:
    """
    Bounded memory of recently acknowledged dedup keys.

    Bounded by entry count and by age. Keys that fell out of the window
    are forgotten, so a late duplicate can be published again.
    """

    def __init__(
        self,
        max_entries: int = 100_000,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize dedup window.

        Args:
            max_entries: Maximum number of remembered keys
            ttl_seconds: Maximum age of a key, None for count-only
            clock: Monotonic clock, injectable for tests
        """
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # key -> time remembered, oldest first
        self._entries: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        self._evict_expired()
        return key in self._entries

    def remember(self, key: str) -> None:
        """Remember an acknowledged key, refreshing its age."""
        self._entries.pop(key, None)
        self._entries[key] = self._clock()
        self._evict_expired()
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def _evict_expired(self) -> None:
        if self.ttl_seconds is None:
            return
        cutoff = self._clock() - self.ttl_seconds
        while self._entries:
            _, remembered_at = next(iter(self._entries.items()))
            if remembered_at > cutoff:
                break
            self._entries.popitem(last=False)


class EventNormalizer:
    """
    Converts InboundEvent into Envelope.

    Assigns a strictly increasing sequence per source and returns None for
    events whose dedup key was acknowledged inside the dedup window.
    """

    def __init__(self, dedup_window: DedupWindow):
        self.dedup_window = dedup_window
        self._sequences: Dict[str, int] = {}

    def seed(self, checkpoint: Checkpoint) -> None:
        """
        Continue numbering above a persisted checkpoint.

        Args:
            checkpoint: Checkpoint loaded at startup
        """
        current = self._sequences.get(checkpoint.source_id, 0)
        self._sequences[checkpoint.source_id] = max(current, checkpoint.sequence)

    def last_sequence(self, source_id: str) -> int:
        return self._sequences.get(source_id, 0)

    def normalize(self, event: InboundEvent) -> Optional[Envelope]:
        """
        Normalize an inbound event.

        Args:
            event: Event received from the update source

        Returns:
            A pending Envelope, or None if the event is a known duplicate
        """
        dedup_key = Envelope.create_dedup_key(event.source_id, event.external_id, event.payload)

        if dedup_key in self.dedup_window:
            logger.debug(
                "Duplicate event discarded",
                extra={
                    "component": "normalizer",
                    "source_id": event.source_id,
                    "external_id": event.external_id,
                    "dedup_key": dedup_key
                }
            )
            return None

        sequence = self._sequences.get(event.source_id, 0) + 1
        self._sequences[event.source_id] = sequence

        return Envelope(
            source_id=event.source_id,
            external_id=event.external_id,
            received_at=event.received_at,
            payload=event.payload,
            checkpoint_token=event.checkpoint_token,
            dedup_key=dedup_key,
            sequence=sequence
        )

    def acknowledge(self, dedup_key: str) -> None:
        """Record that an envelope with this key reached the log."""
        self.dedup_window.remember(dedup_key)
