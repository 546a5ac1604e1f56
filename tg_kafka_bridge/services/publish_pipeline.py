"""
Publish pipeline for tg-kafka-bridge.

Batches envelopes per source, hands batches to the transport in order,
retries transient failures with exponential backoff and applies
backpressure on the in-flight budget.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from ..domain.dto import Envelope, PublishResult, PublishStatus
from ..domain.ports import (
    Backpressure,
    Degraded,
    PublishError,
    PublishTransientFailure,
    PublishTransport,
)
from ..telemetry.logger import MetricsLogger
from .reconnect_supervisor import BackoffPolicy, ReconnectSupervisor


logger = logging.getLogger(__name__)


@dataclass
class _Batch:
    source_id: str
    entries: List[Tuple[Envelope, asyncio.Future]]

    @property
    def envelopes(self) -> List[Envelope]:
        return [envelope for envelope, _ in self.entries]

    @property
    def size_bytes(self) -> int:
        return sum(envelope.size_bytes for envelope, _ in self.entries)


@dataclass
class _Lane:
    """Per-source buffer plus the queue of sealed batches."""
    source_id: str
    buffer: List[Tuple[Envelope, asyncio.Future]] = field(default_factory=list)
    buffer_bytes: int = 0
    linger_handle: Optional[asyncio.TimerHandle] = None
    ready: Deque[_Batch] = field(default_factory=deque)
    # True while a worker owns this lane; keeps one batch per source in flight
    busy: bool = False


class PublishPipeline:
    """
    Ordered, batched, at-least-once publishing.

    Batches are sealed by count, bytes or linger time, whichever comes first.
    Each source has at most one batch with the transport at a time, so order
    is total per source while different sources publish in parallel.

    Every status change is put on `completions` as a PublishResult; the
    future returned by `submit` resolves with the terminal result.
    """

    def __init__(
        self,
        transport: PublishTransport,
        batch_max_count: int = 100,
        batch_max_bytes: int = 1_048_576,
        batch_linger_s: float = 0.05,
        max_inflight_count: int = 1000,
        max_inflight_bytes: int = 16_777_216,
        submit_timeout_s: float = 30.0,
        retry_policy: Optional[BackoffPolicy] = None,
        max_attempts: int = 5,
        workers: int = 4,
        connection: Optional[ReconnectSupervisor] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[MetricsLogger] = None
    ):
        """
        Initialize publish pipeline.

        Args:
            transport: Downstream log transport
            batch_max_count: Envelopes per batch
            batch_max_bytes: Payload bytes per batch
            batch_linger_s: Max time the first envelope waits for a batch to fill
            max_inflight_count: Envelopes accepted but not yet terminal
            max_inflight_bytes: Payload bytes accepted but not yet terminal
            submit_timeout_s: How long submit waits for budget
            retry_policy: Backoff between attempts of one batch
            max_attempts: Attempts per batch, first one included
            workers: Number of worker tasks
            connection: Supervisor of the transport connection
            sleep: Awaitable sleep, injectable for tests
            metrics: Metrics logger
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.transport = transport
        self.batch_max_count = batch_max_count
        self.batch_max_bytes = batch_max_bytes
        self.batch_linger_s = batch_linger_s
        self.max_inflight_count = max_inflight_count
        self.max_inflight_bytes = max_inflight_bytes
        self.submit_timeout_s = submit_timeout_s
        self.retry_policy = retry_policy or BackoffPolicy(base_s=0.1, multiplier=2.0, cap_s=5.0)
        self.max_attempts = max_attempts
        self.workers = workers
        self.connection = connection
        self._sleep = sleep
        self._metrics = metrics or MetricsLogger()

        self.completions: "asyncio.Queue[PublishResult]" = asyncio.Queue()

        self._lanes: Dict[str, _Lane] = {}
        self._work: "asyncio.Queue[_Lane]" = asyncio.Queue()
        self._worker_tasks: List[asyncio.Task] = []

        self._budget = asyncio.Condition()
        self._inflight_count = 0
        self._inflight_bytes = 0

        self._outstanding: Dict[str, Tuple[Envelope, asyncio.Future]] = {}
        self._idle = asyncio.Event()
        self._idle.set()

        self._closed = False
        self._degraded: Optional[Degraded] = None

    @property
    def inflight_count(self) -> int:
        return self._inflight_count

    @property
    def inflight_bytes(self) -> int:
        return self._inflight_bytes

    @property
    def is_degraded(self) -> bool:
        return self._degraded is not None

    async def start(self) -> None:
        """Start worker tasks."""
        if self._worker_tasks:
            return
        self._worker_tasks = [
            asyncio.create_task(self._worker(index), name=f"publish-worker-{index}")
            for index in range(self.workers)
        ]
        logger.info(
            "Publish pipeline started",
            extra={
                "component": "publish_pipeline",
                "workers": self.workers,
                "batch_max_count": self.batch_max_count,
                "batch_max_bytes": self.batch_max_bytes,
                "max_inflight_count": self.max_inflight_count
            }
        )

    async def submit(self, envelope: Envelope) -> "asyncio.Future[PublishResult]":
        """
        Accept an envelope for publishing.

        Calls for one source must not overlap; the poll task submits
        sequentially, which is what keeps per-source order.

        Args:
            envelope: Pending envelope

        Returns:
            Future resolved with the terminal PublishResult

        Raises:
            Backpressure: If no budget freed up within submit_timeout_s
            Degraded: If the transport connection is degraded
            PublishError: If the pipeline is closed
        """
        if self._closed:
            raise PublishError("Publish pipeline is closed")
        if self._degraded is not None:
            raise self._degraded

        await self._reserve(envelope.size_bytes)

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[PublishResult]" = loop.create_future()
        self._outstanding[envelope.envelope_id] = (envelope, future)
        self._idle.clear()

        lane = self._lanes.get(envelope.source_id)
        if lane is None:
            lane = _Lane(source_id=envelope.source_id)
            self._lanes[envelope.source_id] = lane

        if lane.buffer and (
            len(lane.buffer) + 1 > self.batch_max_count
            or lane.buffer_bytes + envelope.size_bytes > self.batch_max_bytes
        ):
            self._seal(lane)

        lane.buffer.append((envelope, future))
        lane.buffer_bytes += envelope.size_bytes

        if len(lane.buffer) >= self.batch_max_count or lane.buffer_bytes >= self.batch_max_bytes:
            self._seal(lane)
        elif len(lane.buffer) == 1:
            lane.linger_handle = loop.call_later(self.batch_linger_s, self._seal, lane)

        return future

    async def _reserve(self, size: int) -> None:
        """Wait for in-flight budget, or raise Backpressure."""
        async with self._budget:
            try:
                await asyncio.wait_for(
                    self._budget.wait_for(lambda: self._has_room(size)),
                    timeout=self.submit_timeout_s
                )
            except asyncio.TimeoutError:
                raise Backpressure(
                    f"In-flight budget exhausted for {self.submit_timeout_s}s "
                    f"({self._inflight_count} envelopes, {self._inflight_bytes} bytes)"
                ) from None
            self._inflight_count += 1
            self._inflight_bytes += size

    def _has_room(self, size: int) -> bool:
        if self._inflight_count == 0:
            # An oversized envelope still goes through when nothing else is in flight
            return True
        return (
            self._inflight_count < self.max_inflight_count
            and self._inflight_bytes + size <= self.max_inflight_bytes
        )

    async def _release(self, count: int, size: int) -> None:
        async with self._budget:
            self._inflight_count -= count
            self._inflight_bytes -= size
            self._budget.notify_all()

    def _seal(self, lane: _Lane) -> None:
        """Close the lane's buffer into a batch and schedule the lane."""
        if lane.linger_handle is not None:
            lane.linger_handle.cancel()
            lane.linger_handle = None
        if not lane.buffer:
            return

        lane.ready.append(_Batch(source_id=lane.source_id, entries=lane.buffer))
        lane.buffer = []
        lane.buffer_bytes = 0

        if not lane.busy:
            lane.busy = True
            self._work.put_nowait(lane)

    def flush(self) -> None:
        """Seal every partially filled batch."""
        for lane in self._lanes.values():
            self._seal(lane)

    async def _worker(self, index: int) -> None:
        while True:
            lane = await self._work.get()
            try:
                batch = lane.ready.popleft()
                await self._publish_batch(batch)
            finally:
                if lane.ready:
                    self._work.put_nowait(lane)
                else:
                    lane.busy = False
                self._work.task_done()

    async def _publish_batch(self, batch: _Batch) -> None:
        """Send one batch until acknowledged or out of attempts."""
        for envelope, _ in batch.entries:
            envelope.status = PublishStatus.IN_FLIGHT
            self.completions.put_nowait(
                PublishResult.for_envelope(envelope, PublishStatus.IN_FLIGHT)
            )

        started = time.monotonic()
        attempt = 0
        last_error: Optional[str] = None

        while True:
            attempt += 1
            try:
                if self.connection is not None:
                    await self.connection.ensure_connected()
                locations = await self.transport.send_batch(batch.envelopes)

            except Degraded as e:
                self._degraded = e
                last_error = str(e)
                break

            except PublishTransientFailure as e:
                last_error = str(e)
                if e.disconnected and self.connection is not None:
                    self.connection.mark_disconnected(e)

                if attempt >= self.max_attempts:
                    break

                delay = self.retry_policy.delay(attempt - 1)
                logger.warning(
                    f"Publish attempt {attempt} failed: {e}",
                    extra={
                        "component": "publish_pipeline",
                        "source_id": batch.source_id,
                        "batch_size": len(batch.entries),
                        "attempt": attempt,
                        "backoff_ms": round(delay * 1000, 2),
                        "error": str(e)
                    }
                )
                await self._sleep(delay)
                continue

            except Exception as e:
                last_error = str(e)
                logger.error(
                    f"Non-retryable publish error: {e}",
                    extra={
                        "component": "publish_pipeline",
                        "source_id": batch.source_id,
                        "batch_size": len(batch.entries),
                        "attempt": attempt,
                        "error": str(e)
                    }
                )
                break

            else:
                await self._resolve(batch, PublishStatus.ACKNOWLEDGED, attempt, locations=locations)
                self._metrics.log_batch_published(
                    source_id=batch.source_id,
                    batch_size=len(batch.entries),
                    batch_bytes=batch.size_bytes,
                    duration_ms=(time.monotonic() - started) * 1000,
                    success=True,
                    attempts=attempt
                )
                return

        logger.error(
            f"Batch failed after {attempt} attempts: {last_error}",
            extra={
                "component": "publish_pipeline",
                "source_id": batch.source_id,
                "batch_size": len(batch.entries),
                "first_sequence": batch.entries[0][0].sequence,
                "last_sequence": batch.entries[-1][0].sequence,
                "attempts": attempt,
                "error": last_error
            }
        )
        await self._resolve(batch, PublishStatus.FAILED, attempt, error=last_error)
        self._metrics.log_batch_published(
            source_id=batch.source_id,
            batch_size=len(batch.entries),
            batch_bytes=batch.size_bytes,
            duration_ms=(time.monotonic() - started) * 1000,
            success=False,
            attempts=attempt,
            error=last_error
        )

    async def _resolve(
        self,
        batch: _Batch,
        status: PublishStatus,
        attempts: int,
        locations: Optional[List[str]] = None,
        error: Optional[str] = None
    ) -> None:
        """Move every envelope of a batch to a terminal status."""
        for index, (envelope, future) in enumerate(batch.entries):
            envelope.status = status
            result = PublishResult.for_envelope(
                envelope,
                status,
                location=locations[index] if locations and index < len(locations) else None,
                attempts=attempts,
                error=error
            )
            self.completions.put_nowait(result)
            if not future.done():
                future.set_result(result)
            self._outstanding.pop(envelope.envelope_id, None)

        if not self._outstanding:
            self._idle.set()

        await self._release(len(batch.entries), batch.size_bytes)

    async def drain(self, timeout_s: float) -> List[Envelope]:
        """
        Flush and wait for every accepted envelope to reach a terminal status.

        Args:
            timeout_s: Maximum time to wait

        Returns:
            Envelopes still unresolved when the timeout elapsed
        """
        self.flush()
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            pass
        return [envelope for envelope, _ in self._outstanding.values()]

    async def close(self) -> None:
        """Stop workers and cancel futures of envelopes left unresolved."""
        self._closed = True

        for lane in self._lanes.values():
            if lane.linger_handle is not None:
                lane.linger_handle.cancel()
                lane.linger_handle = None

        for task in self._worker_tasks:
            task.cancel()
        if self._worker_tasks:
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []

        for _, future in self._outstanding.values():
            if not future.done():
                future.cancel()

        logger.info(
            "Publish pipeline closed",
            extra={
                "component": "publish_pipeline",
                "unresolved": len(self._outstanding)
            }
        )
