"""
Main bridge service for tg-kafka-bridge.
Coordinates polling, filtering, normalization, publishing and checkpointing.
"""

import asyncio
import logging
import time
from typing import Optional

from ..domain.dto import BridgeStats, Checkpoint, Envelope, InboundEvent, PublishResult, PublishStatus
from ..domain.ports import (
    Backpressure,
    BridgeError,
    CheckpointError,
    CheckpointStore,
    Degraded,
    PermanentPublishFailure,
    PublishTransport,
    SourceUnavailable,
    UpdateFilter,
    UpdateSource,
)
from ..telemetry.logger import MetricsLogger
from .ack_coordinator import AckCoordinator
from .normalizer import EventNormalizer
from .publish_pipeline import PublishPipeline
from .reconnect_supervisor import ReconnectSupervisor


logger = logging.getLogger(__name__)


class BridgeService:
    """
    Main service that coordinates the whole bridge.

    Pipeline: UpdateSource → Filter → Normalize → Publish → Ack → Checkpoint

    One poll task feeds the publish pipeline; one completion task consumes
    the pipeline's completion channel, drives the ack coordinator and
    persists checkpoints.
    """

    def __init__(
        self,
        source: UpdateSource,
        source_supervisor: ReconnectSupervisor,
        transport: PublishTransport,
        pipeline: PublishPipeline,
        coordinator: AckCoordinator,
        normalizer: EventNormalizer,
        checkpoint_store: CheckpointStore,
        update_filter: Optional[UpdateFilter] = None,
        drain_timeout_s: float = 10.0,
        metrics: Optional[MetricsLogger] = None
    ):
        """
        Initialize bridge service.

        Args:
            source: Update feed
            source_supervisor: Reconnect supervisor wrapping the source
            transport: Downstream transport, closed on stop
            pipeline: Publish pipeline over the transport
            coordinator: Ack coordinator
            normalizer: Event normalizer
            checkpoint_store: Checkpoint persistence
            update_filter: Optional filter applied before normalization
            drain_timeout_s: How long stop() waits for in-flight envelopes
            metrics: Metrics logger
        """
        self.source = source
        self.source_supervisor = source_supervisor
        self.transport = transport
        self.pipeline = pipeline
        self.coordinator = coordinator
        self.normalizer = normalizer
        self.checkpoint_store = checkpoint_store
        self.update_filter = update_filter
        self.drain_timeout_s = drain_timeout_s
        self._metrics = metrics or MetricsLogger()

        # Service state
        self._is_running = False
        self._stopping = asyncio.Event()
        self._stats = BridgeStats()
        self._degraded: Optional[Degraded] = None
        self._persisted: Optional[Checkpoint] = None
        self._persist_lock = asyncio.Lock()

        # Background tasks
        self._poll_task: Optional[asyncio.Task] = None
        self._completion_task: Optional[asyncio.Task] = None

    @property
    def source_id(self) -> str:
        return self.source.source_id

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def is_degraded(self) -> bool:
        return self._degraded is not None or self.pipeline.is_degraded

    @property
    def persisted_checkpoint(self) -> Optional[Checkpoint]:
        """Last checkpoint written to the store."""
        return self._persisted

    async def start(self) -> None:
        """
        Start the bridge service.

        This includes:
        - Loading the persisted checkpoint and resuming from it
        - Starting the publish workers
        - Starting the completion and poll tasks

        Raises:
            BridgeError: If startup fails
        """
        if self._is_running:
            logger.warning("Bridge service already running")
            return

        try:
            logger.info("Starting bridge service")

            checkpoint = await self.checkpoint_store.load(self.source_id)
            if checkpoint is not None:
                self.coordinator.restore(checkpoint)
                self.normalizer.seed(checkpoint)
                self._persisted = checkpoint
            self.source.resume_from(checkpoint)

            await self.pipeline.start()

            self._stopping.clear()
            self._completion_task = asyncio.create_task(
                self._completion_loop(), name="bridge-completions"
            )
            self._poll_task = asyncio.create_task(self._poll_loop(), name="bridge-poll")

            self._is_running = True

            logger.info(
                "Bridge service started successfully",
                extra={
                    "component": "bridge_service",
                    "source_id": self.source_id,
                    "checkpoint_sequence": checkpoint.sequence if checkpoint else 0,
                    "checkpoint_token": checkpoint.token if checkpoint else None
                }
            )

        except Exception as e:
            logger.error(f"Failed to start bridge service: {e}")
            await self._cancel_tasks()
            await self.pipeline.close()
            raise BridgeError(f"Service startup failed: {e}") from e

    async def stop(self) -> None:
        """
        Stop polling, drain in-flight envelopes and persist the final checkpoint.
        Envelopes still unresolved after the drain timeout are logged.
        """
        if not self._is_running:
            return

        logger.info("Stopping bridge service")
        self._stopping.set()

        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass

        unresolved = await self.pipeline.drain(self.drain_timeout_s)

        if self._completion_task and not self._completion_task.done():
            self._completion_task.cancel()
            try:
                await self._completion_task
            except asyncio.CancelledError:
                pass

        # Results produced after the completion task stopped
        while not self.pipeline.completions.empty():
            await self._apply_result(self.pipeline.completions.get_nowait())

        await self._persist_checkpoint()

        for envelope in unresolved:
            logger.warning(
                f"Envelope {envelope.envelope_id} unresolved at shutdown",
                extra={
                    "component": "bridge_service",
                    "source_id": envelope.source_id,
                    "sequence": envelope.sequence,
                    "status": envelope.status.value,
                    "checkpoint_token": envelope.checkpoint_token
                }
            )

        # Registered but never accepted by the pipeline, e.g. cancelled under backpressure
        drained = {envelope.envelope_id for envelope in unresolved}
        never_submitted = [
            envelope_id for envelope_id in self.coordinator.unresolved()
            if envelope_id not in drained
        ]
        for envelope_id in never_submitted:
            logger.warning(
                f"Envelope {envelope_id} unresolved at shutdown",
                extra={
                    "component": "bridge_service",
                    "source_id": self.source_id,
                    "envelope_id": envelope_id,
                    "status": PublishStatus.PENDING.value
                }
            )

        await self.pipeline.close()
        await self._close_resources()

        self._is_running = False

        stats = await self.get_stats()
        self._metrics.log_service_stats(stats.model_dump())
        logger.info(
            "Bridge service stopped",
            extra={
                "component": "bridge_service",
                "unresolved": len(unresolved) + len(never_submitted),
                "checkpoint_sequence": self._persisted.sequence if self._persisted else 0
            }
        )

    async def get_stats(self) -> BridgeStats:
        """
        Get current bridge statistics.

        Returns:
            Copy of the current statistics
        """
        stats = self._stats.model_copy(deep=True)
        stats.total_malformed = self.source.malformed_count
        if stats.source_stats.get(self.source_id) is not None:
            stats.source_stats[self.source_id]["malformed"] = self.source.malformed_count
        return stats

    async def _poll_loop(self) -> None:
        """Poll the source until stopped or degraded."""
        resume_needed = False
        while not self._stopping.is_set():
            try:
                await self.source_supervisor.ensure_connected()
                if resume_needed:
                    # Anything past the persisted checkpoint is redelivered
                    self.source.resume_from(self._persisted)
                    resume_needed = False
                async for event in self.source.poll():
                    await self._handle_event(event)

            except SourceUnavailable as e:
                self._stats.increment("reconnects", self.source_id)
                self.source_supervisor.mark_disconnected(e)
                resume_needed = True

            except Degraded as e:
                self._degraded = e
                logger.critical(
                    f"Bridge degraded, polling stopped: {e}",
                    extra={
                        "component": "bridge_service",
                        "source_id": self.source_id,
                        "error": str(e)
                    }
                )
                return

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.exception(
                    f"Unexpected error in poll loop: {e}",
                    extra={
                        "component": "bridge_service",
                        "source_id": self.source_id,
                        "error": str(e)
                    }
                )
                self.source_supervisor.mark_disconnected(e)
                resume_needed = True

    async def _handle_event(self, event: InboundEvent) -> None:
        """
        Process a single inbound event through the pipeline.

        Args:
            event: Event received from the source
        """
        self._stats.increment("received", event.source_id)

        # Step 1: Filter event
        if self.update_filter is not None and not self.update_filter.should_process(event):
            filter_reason = self.update_filter.get_filter_reason(event)
            logger.debug(
                f"Update filtered: {filter_reason}",
                extra={
                    "component": "bridge_service",
                    "source_id": event.source_id,
                    "external_id": event.external_id,
                    "filter_reason": filter_reason
                }
            )
            self._stats.increment("filtered", event.source_id)
            await self._settle(event)
            return

        # Step 2: Normalize, dropping recent duplicates
        envelope = self.normalizer.normalize(event)
        if envelope is None:
            self._stats.increment("duplicates", event.source_id)
            await self._settle(event)
            return

        # Step 3: Track and publish
        self.coordinator.register(envelope)
        await self._submit(envelope)
        self._stats.increment("submitted", event.source_id)

    async def _submit(self, envelope: Envelope) -> None:
        """Submit an envelope, waiting out backpressure."""
        while True:
            try:
                await self.pipeline.submit(envelope)
                return
            except Backpressure as e:
                self._stats.increment("backpressure", envelope.source_id)
                self._metrics.log_backpressure(
                    source_id=envelope.source_id,
                    inflight_count=self.pipeline.inflight_count,
                    inflight_bytes=self.pipeline.inflight_bytes
                )
                logger.warning(
                    f"Backpressure, retrying submit: {e}",
                    extra={
                        "component": "bridge_service",
                        "source_id": envelope.source_id,
                        "sequence": envelope.sequence,
                        "inflight_count": self.pipeline.inflight_count,
                        "inflight_bytes": self.pipeline.inflight_bytes
                    }
                )

    async def _settle(self, event: InboundEvent) -> None:
        if self.coordinator.settle(event.source_id, event.checkpoint_token) is not None:
            await self._persist_checkpoint()

    async def _completion_loop(self) -> None:
        """Apply pipeline results to the coordinator."""
        while True:
            result = await self.pipeline.completions.get()
            await self._apply_result(result)

    async def _apply_result(self, result: PublishResult) -> None:
        try:
            advanced = self.coordinator.apply(result)

        except PermanentPublishFailure as e:
            self._stats.increment("failed", result.source_id)
            logger.critical(
                f"Checkpoint halted: {e}",
                extra={
                    "component": "bridge_service",
                    "source_id": e.source_id,
                    "sequence": e.sequence,
                    "envelope_id": e.envelope_id,
                    "error": e.reason
                }
            )
            return

        except ValueError as e:
            logger.error(
                f"Rejected publish result: {e}",
                extra={
                    "component": "bridge_service",
                    "source_id": result.source_id,
                    "sequence": result.sequence,
                    "status": result.status.value
                }
            )
            return

        if result.status == PublishStatus.ACKNOWLEDGED:
            self.normalizer.acknowledge(result.dedup_key)
            self._stats.increment("acknowledged", result.source_id)

        if advanced is not None:
            await self._persist_checkpoint()

    async def _persist_checkpoint(self) -> None:
        """Write the coordinator's checkpoint if it moved since the last write."""
        async with self._persist_lock:
            checkpoint = self.coordinator.checkpoint(self.source_id)
            if checkpoint is None:
                return
            if (
                self._persisted is not None
                and self._persisted.sequence == checkpoint.sequence
                and self._persisted.token == checkpoint.token
            ):
                return

            started = time.monotonic()
            try:
                await self.checkpoint_store.save(checkpoint)
            except CheckpointError as e:
                logger.error(
                    f"Failed to persist checkpoint: {e}",
                    extra={
                        "component": "bridge_service",
                        "source_id": checkpoint.source_id,
                        "sequence": checkpoint.sequence,
                        "error": str(e)
                    }
                )
                return

            self._persisted = checkpoint
            self._stats.checkpoints_persisted += 1
            self.source.confirm(checkpoint)
            self._metrics.log_checkpoint_persisted(
                source_id=checkpoint.source_id,
                sequence=checkpoint.sequence,
                token=checkpoint.token,
                duration_ms=(time.monotonic() - started) * 1000
            )

    async def _cancel_tasks(self) -> None:
        for task in (self._poll_task, self._completion_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _close_resources(self) -> None:
        for name, closer in (
            ("source", self.source.close),
            ("transport", self.transport.close),
            ("checkpoint_store", self.checkpoint_store.close),
        ):
            try:
                await closer()
            except Exception as e:
                logger.error(
                    f"Error closing {name}: {e}",
                    extra={"component": "bridge_service", "error": str(e)}
                )
