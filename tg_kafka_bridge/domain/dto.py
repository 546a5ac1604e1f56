"""
Domain Transfer Objects for tg-kafka-bridge.
Defines inbound events, queue envelopes and checkpoints.
"""

import base64
import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ConfigDict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PublishStatus(str, Enum):
    """Publish status of an envelope."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PublishStatus.ACKNOWLEDGED, PublishStatus.FAILED)


class InboundEvent(BaseModel):
    """
    Raw update received from the bot feed.
    Immutable once created.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)

    source_id: str = Field(..., min_length=1, description="Feed identifier, e.g. bot name")
    external_id: str = Field(..., min_length=1, description="Source-unique update id")
    received_at: datetime = Field(default_factory=utc_now, description="Receipt timestamp (UTC)")
    payload: bytes = Field(..., description="Raw update payload")
    checkpoint_token: str = Field(..., min_length=1, description="Opaque source resume token")


class Envelope(BaseModel):
    """
    Normalized, queue-ready representation of one update.
    """
    model_config = ConfigDict(extra='forbid', validate_assignment=True)

    source_id: str = Field(..., description="Feed identifier")
    external_id: str = Field(..., description="Source-unique update id")
    received_at: datetime = Field(..., description="Receipt timestamp (UTC)")
    payload: bytes = Field(..., description="Raw update payload")
    checkpoint_token: str = Field(..., description="Source token the envelope was derived at")

    dedup_key: str = Field(..., min_length=64, max_length=64, description="SHA-256 hex dedup key")
    sequence: int = Field(..., ge=1, description="Per-source sequence number")
    status: PublishStatus = Field(default=PublishStatus.PENDING)

    @property
    def envelope_id(self) -> str:
        """Stable identifier: <source_id>:<sequence>."""
        return f"{self.source_id}:{self.sequence}"

    @property
    def size_bytes(self) -> int:
        return len(self.payload)

    @classmethod
    def create_dedup_key(cls, source_id: str, external_id: str, payload: bytes) -> str:
        """
        Create deterministic dedup key for an event.

        Args:
            source_id: Feed identifier
            external_id: Source-unique update id
            payload: Raw payload bytes

        Returns:
            Hex SHA-256 of source id, external id and payload
        """
        digest = hashlib.sha256()
        digest.update(source_id.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(external_id.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(payload)
        return digest.hexdigest()

    def to_record(self) -> Dict[str, Any]:
        """
        Render the record written to the queue.

        Payload is embedded as UTF-8 text when it decodes cleanly,
        otherwise as base64.
        """
        try:
            payload_text = self.payload.decode("utf-8")
            encoding = "utf-8"
        except UnicodeDecodeError:
            payload_text = base64.b64encode(self.payload).decode("ascii")
            encoding = "base64"

        return {
            "schema_version": "1.0",
            "source_id": self.source_id,
            "external_id": self.external_id,
            "sequence": self.sequence,
            "dedup_key": self.dedup_key,
            "received_at": self.received_at.isoformat(),
            "payload_encoding": encoding,
            "payload": payload_text,
        }

    def record_headers(self) -> Dict[str, str]:
        """Headers attached to the queue record."""
        return {
            "service": "tg-kafka-bridge",
            "source_id": self.source_id,
            "sequence": str(self.sequence),
            "dedup_key": self.dedup_key,
        }


class Checkpoint(BaseModel):
    """Durable marker of fully-acknowledged progress for a source."""
    model_config = ConfigDict(extra='forbid', frozen=True)

    source_id: str = Field(..., description="Feed identifier")
    sequence: int = Field(default=0, ge=0, description="Highest contiguously acknowledged sequence")
    token: str = Field(..., description="Source token to resume after")
    updated_at: datetime = Field(default_factory=utc_now)


class PublishResult(BaseModel):
    """
    Result of publishing an envelope.
    Also used as the message on the pipeline completion channel.
    """
    model_config = ConfigDict(extra='forbid')

    envelope_id: str = Field(..., description="<source_id>:<sequence>")
    source_id: str = Field(..., description="Feed identifier")
    sequence: int = Field(..., description="Envelope sequence number")
    dedup_key: str = Field(..., description="Envelope dedup key")
    status: PublishStatus = Field(..., description="Status reached")
    location: Optional[str] = Field(None, description="partition:offset or stream id")
    attempts: int = Field(default=0, description="Number of publish attempts")
    error: Optional[str] = Field(None, description="Error message if failed")

    @property
    def success(self) -> bool:
        return self.status == PublishStatus.ACKNOWLEDGED

    @classmethod
    def for_envelope(
        cls,
        envelope: Envelope,
        status: PublishStatus,
        location: Optional[str] = None,
        attempts: int = 0,
        error: Optional[str] = None
    ) -> "PublishResult":
        return cls(
            envelope_id=envelope.envelope_id,
            source_id=envelope.source_id,
            sequence=envelope.sequence,
            dedup_key=envelope.dedup_key,
            status=status,
            location=location,
            attempts=attempts,
            error=error
        )


class BridgeStats(BaseModel):
    """Statistics for the bridge."""
    model_config = ConfigDict(extra='forbid')

    total_received: int = Field(default=0, description="Updates received from the source")
    total_filtered: int = Field(default=0, description="Updates dropped by filters")
    total_malformed: int = Field(default=0, description="Malformed updates skipped")
    total_duplicates: int = Field(default=0, description="Duplicates discarded by dedup window")
    total_submitted: int = Field(default=0, description="Envelopes submitted to the pipeline")
    total_acknowledged: int = Field(default=0, description="Envelopes acknowledged downstream")
    total_failed: int = Field(default=0, description="Envelopes permanently failed")
    total_backpressure: int = Field(default=0, description="Submits rejected by backpressure")
    total_reconnects: int = Field(default=0, description="Source reconnect cycles")
    checkpoints_persisted: int = Field(default=0, description="Checkpoint writes")

    # Per source statistics
    source_stats: Dict[str, Dict[str, int]] = Field(
        default_factory=dict,
        description="Per-source statistics"
    )

    def increment(self, counter: str, source_id: Optional[str] = None) -> None:
        """Increment a total counter and, if given, the per-source one."""
        field_name = f"total_{counter}"
        setattr(self, field_name, getattr(self, field_name) + 1)

        if source_id is not None:
            self._ensure_source_stats(source_id)
            self.source_stats[source_id][counter] += 1

    def _ensure_source_stats(self, source_id: str) -> None:
        """Ensure source statistics entry exists."""
        if source_id not in self.source_stats:
            self.source_stats[source_id] = {
                "received": 0,
                "filtered": 0,
                "malformed": 0,
                "duplicates": 0,
                "submitted": 0,
                "acknowledged": 0,
                "failed": 0,
                "backpressure": 0,
                "reconnects": 0,
            }
