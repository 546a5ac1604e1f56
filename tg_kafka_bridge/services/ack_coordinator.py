"""
Ack coordinator for tg-kafka-bridge.

Ties the bot-side checkpoint to downstream acknowledgments: a source token
is only checkpointed once every envelope derived at or before it has been
acknowledged (low-water-mark advance).
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..domain.dto import Checkpoint, Envelope, PublishResult, PublishStatus, utc_now
from ..domain.ports import PermanentPublishFailure


logger = logging.getLogger(__name__)


_ALLOWED_TRANSITIONS = {
    PublishStatus.PENDING: {PublishStatus.IN_FLIGHT, PublishStatus.ACKNOWLEDGED, PublishStatus.FAILED},
    PublishStatus.IN_FLIGHT: {PublishStatus.IN_FLIGHT, PublishStatus.ACKNOWLEDGED, PublishStatus.FAILED},
    PublishStatus.ACKNOWLEDGED: set(),
    PublishStatus.FAILED: set(),
}


@dataclass
class _Slot:
    envelope_id: str
    token: str
    status: PublishStatus = PublishStatus.PENDING
    error: Optional[str] = None


class _SourceState:
    """Low-water-mark bookkeeping for one source."""

    def __init__(self, source_id: str):
        self.source_id = source_id
        # sequence -> slot, in registration (= sequence) order
        self.slots: "OrderedDict[int, _Slot]" = OrderedDict()
        self.last_registered = 0
        self.committed: Optional[Checkpoint] = None
        self.halted: Optional[PermanentPublishFailure] = None


class AckCoordinator:
    """
    Per-envelope state machine `pending -> in_flight -> acknowledged | failed`
    plus the checkpoint low-water-mark per source.

    All mutations are serialized through one lock; readers get immutable
    Checkpoint snapshots.
    """

    def __init__(self):
        self._sources: Dict[str, _SourceState] = {}
        self._lock = threading.Lock()

    def restore(self, checkpoint: Checkpoint) -> None:
        """
        Seed a source from its persisted checkpoint.

        Args:
            checkpoint: Checkpoint loaded at startup
        """
        with self._lock:
            state = self._state(checkpoint.source_id)
            if state.slots:
                raise RuntimeError(f"Cannot restore {checkpoint.source_id}: envelopes already registered")
            state.committed = checkpoint
            state.last_registered = max(state.last_registered, checkpoint.sequence)

    def register(self, envelope: Envelope) -> None:
        """
        Start tracking an envelope as pending.

        Args:
            envelope: Envelope about to be submitted

        Raises:
            ValueError: If the sequence does not increase strictly
        """
        with self._lock:
            state = self._state(envelope.source_id)
            if envelope.sequence <= state.last_registered:
                raise ValueError(
                    f"Sequence {envelope.sequence} for {envelope.source_id} is not above "
                    f"{state.last_registered}"
                )
            state.last_registered = envelope.sequence
            state.slots[envelope.sequence] = _Slot(
                envelope_id=envelope.envelope_id,
                token=envelope.checkpoint_token
            )

    def settle(self, source_id: str, token: str) -> Optional[Checkpoint]:
        """
        Move past an event that produced no envelope (filtered or duplicate).

        The token is attached to the newest tracked envelope so the checkpoint
        reaches it once that envelope and all before it are acknowledged. With
        nothing outstanding the checkpoint advances right away.

        Returns:
            The new checkpoint if it advanced, else None
        """
        with self._lock:
            state = self._state(source_id)
            if state.slots:
                last_sequence = next(reversed(state.slots))
                state.slots[last_sequence].token = token
                return None
            if state.halted is not None:
                return None

            sequence = state.committed.sequence if state.committed else 0
            state.committed = Checkpoint(source_id=source_id, sequence=sequence, token=token)
            return state.committed

    def apply(self, result: PublishResult) -> Optional[Checkpoint]:
        """
        Apply a status transition reported by the publish pipeline.

        Args:
            result: Completion-channel message

        Returns:
            The new checkpoint if it advanced, else None

        Raises:
            PermanentPublishFailure: If the envelope failed permanently
        """
        failure: Optional[PermanentPublishFailure] = None
        advanced: Optional[Checkpoint] = None

        with self._lock:
            state = self._state(result.source_id)
            slot = state.slots.get(result.sequence)
            if slot is None:
                logger.warning(
                    f"Result for untracked envelope {result.envelope_id}",
                    extra={
                        "component": "ack_coordinator",
                        "source_id": result.source_id,
                        "sequence": result.sequence,
                        "status": result.status.value
                    }
                )
                return None

            if result.status not in _ALLOWED_TRANSITIONS[slot.status]:
                raise ValueError(
                    f"Illegal transition for {slot.envelope_id}: {slot.status.value} -> {result.status.value}"
                )

            slot.status = result.status
            slot.error = result.error

            if result.status == PublishStatus.FAILED:
                failure = PermanentPublishFailure(
                    source_id=result.source_id,
                    sequence=result.sequence,
                    envelope_id=result.envelope_id,
                    reason=result.error
                )
                if state.halted is None or result.sequence < state.halted.sequence:
                    state.halted = failure

            advanced = self._advance(state)

        if failure is not None:
            raise failure
        return advanced

    def _advance(self, state: _SourceState) -> Optional[Checkpoint]:
        """Pop the acknowledged prefix and move the checkpoint to its end."""
        last: Optional[tuple] = None
        while state.slots:
            sequence, slot = next(iter(state.slots.items()))
            if slot.status != PublishStatus.ACKNOWLEDGED:
                break
            state.slots.popitem(last=False)
            last = (sequence, slot.token)

        if last is None:
            return None

        state.committed = Checkpoint(
            source_id=state.source_id,
            sequence=last[0],
            token=last[1],
            updated_at=utc_now()
        )
        return state.committed

    def checkpoint(self, source_id: str) -> Optional[Checkpoint]:
        """Current checkpoint of a source."""
        with self._lock:
            state = self._sources.get(source_id)
            return state.committed if state else None

    def snapshot(self) -> Dict[str, Optional[Checkpoint]]:
        """Checkpoints of all known sources."""
        with self._lock:
            return {source_id: state.committed for source_id, state in self._sources.items()}

    def halted(self, source_id: str) -> Optional[PermanentPublishFailure]:
        """The failure blocking a source, if any."""
        with self._lock:
            state = self._sources.get(source_id)
            return state.halted if state else None

    def pending_count(self, source_id: Optional[str] = None) -> int:
        """Number of tracked envelopes not yet popped by the low-water-mark."""
        with self._lock:
            if source_id is not None:
                state = self._sources.get(source_id)
                return len(state.slots) if state else 0
            return sum(len(state.slots) for state in self._sources.values())

    def unresolved(self) -> List[str]:
        """Envelope ids still pending or in flight."""
        with self._lock:
            return [
                slot.envelope_id
                for state in self._sources.values()
                for slot in state.slots.values()
                if not slot.status.is_terminal
            ]

    def _state(self, source_id: str) -> _SourceState:
        state = self._sources.get(source_id)
        if state is None:
            state = _SourceState(source_id)
            self._sources[source_id] = state
        return state
