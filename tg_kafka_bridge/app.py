"""
Main application module for tg-kafka-bridge.
Composes dependencies from configuration and manages the service lifecycle.
"""

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import Optional

from .config import AppConfig, load_config, resolve_bot_token, validate_secrets_exist
from .telemetry.logger import MetricsLogger, setup_logging

# Adapter imports
from .adapters.bot_api_source import BotApiUpdateSource
from .adapters.factory import TransportFactory
from .adapters.filters import create_default_filter
from .domain.ports import CheckpointStore, PublishTransport

# Service imports
from .services.ack_coordinator import AckCoordinator
from .services.bridge_service import BridgeService
from .services.normalizer import DedupWindow, EventNormalizer
from .services.publish_pipeline import PublishPipeline
from .services.reconnect_supervisor import BackoffPolicy, ReconnectSupervisor


logger = logging.getLogger(__name__)


class BridgeApplication:
    """
    Main application class that composes all dependencies
    and manages the service lifecycle.
    """

    def __init__(self, config: AppConfig):
        """
        Initialize application with configuration.

        Args:
            config: Application configuration
        """
        self.config = config

        # Dependencies (will be initialized in setup)
        self.source: Optional[BotApiUpdateSource] = None
        self.transport: Optional[PublishTransport] = None
        self.checkpoint_store: Optional[CheckpointStore] = None
        self.pipeline: Optional[PublishPipeline] = None
        self.bridge_service: Optional[BridgeService] = None

        # Lifecycle management
        self._shutdown_event = asyncio.Event()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(signum, lambda s, f: signal_handler(s))

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _reconnect_policy(self) -> BackoffPolicy:
        reconnect = self.config.reconnect
        return BackoffPolicy(
            base_s=reconnect.base_ms / 1000,
            multiplier=reconnect.multiplier,
            cap_s=reconnect.cap_ms / 1000,
            jitter_factor=reconnect.jitter_factor
        )

    async def setup(self) -> None:
        """
        Setup all service dependencies.

        Raises:
            Exception: If setup fails
        """
        try:
            logger.info("Setting up tg-kafka-bridge application")

            validate_secrets_exist(self.config)
            metrics = MetricsLogger()

            # Update source
            telegram = self.config.telegram
            self.source = BotApiUpdateSource(
                bot_token=resolve_bot_token(self.config),
                source_id=telegram.source_id,
                api_url=telegram.api_url,
                poll_timeout_s=telegram.poll_timeout_s,
                limit=telegram.limit,
                allowed_updates=telegram.allowed_updates,
                request_timeout_margin_s=telegram.request_timeout_margin_s,
                stale_poll_delay_s=telegram.stale_poll_delay_s
            )
            source_supervisor = ReconnectSupervisor(
                target=self.source,
                name="source",
                policy=self._reconnect_policy(),
                max_attempts=self.config.reconnect.max_attempts,
                stability_s=self.config.reconnect.stability_s,
                metrics=metrics
            )

            # Downstream transport
            self.transport = TransportFactory.create_transport(self.config.output)
            transport_supervisor = ReconnectSupervisor(
                target=self.transport,
                name="transport",
                policy=self._reconnect_policy(),
                max_attempts=self.config.reconnect.max_attempts,
                stability_s=self.config.reconnect.stability_s,
                metrics=metrics
            )

            batch = self.config.batch
            retry = self.config.retry
            self.pipeline = PublishPipeline(
                transport=self.transport,
                batch_max_count=batch.max_count,
                batch_max_bytes=batch.max_bytes,
                batch_linger_s=batch.linger_ms / 1000,
                max_inflight_count=batch.max_inflight_count,
                max_inflight_bytes=batch.max_inflight_bytes,
                submit_timeout_s=batch.submit_timeout_s,
                retry_policy=BackoffPolicy(
                    base_s=retry.base_ms / 1000,
                    multiplier=retry.multiplier,
                    cap_s=retry.cap_ms / 1000,
                    jitter_factor=retry.jitter_factor
                ),
                max_attempts=retry.max_attempts,
                workers=batch.workers,
                connection=transport_supervisor,
                metrics=metrics
            )

            self.checkpoint_store = TransportFactory.create_checkpoint_store(self.config.checkpoint)

            filters = self.config.filters
            update_filter = create_default_filter(
                allow_bots=filters.allow_bots,
                allow_private_chats=filters.allow_private_chats,
                include_channel_posts=filters.include_channel_posts,
                max_text_length=filters.max_text_length,
                chat_ids=filters.chat_ids
            )

            normalizer = EventNormalizer(
                DedupWindow(
                    max_entries=self.config.dedup.max_entries,
                    ttl_seconds=self.config.dedup.ttl_s
                )
            )

            self.bridge_service = BridgeService(
                source=self.source,
                source_supervisor=source_supervisor,
                transport=self.transport,
                pipeline=self.pipeline,
                coordinator=AckCoordinator(),
                normalizer=normalizer,
                checkpoint_store=self.checkpoint_store,
                update_filter=update_filter,
                drain_timeout_s=self.config.shutdown.drain_timeout_s,
                metrics=metrics
            )

            logger.info("Application setup completed successfully")

        except Exception as e:
            logger.error(f"Application setup failed: {e}")
            raise

    async def cleanup(self) -> None:
        """Cleanup application resources."""
        logger.info("Cleaning up application resources")

        try:
            if self.bridge_service and self.bridge_service.is_running:
                # Stopping the service closes source, transport and store
                await self.bridge_service.stop()
            else:
                for resource in (self.source, self.transport, self.checkpoint_store):
                    if resource is not None:
                        await resource.close()

            logger.info("Application cleanup completed")

        except Exception as e:
            logger.error(f"Error during cleanup: {e}")

    async def run(self) -> None:
        """
        Run the application.

        Starts the bridge service and waits for a shutdown signal.
        Resources are released by cleanup(), which lifespan() calls.
        """
        if not self.bridge_service:
            raise RuntimeError("Application not setup. Call setup() first.")

        logger.info("Starting tg-kafka-bridge application")
        self._setup_signal_handlers()

        try:
            await self.bridge_service.start()

            logger.info(
                "Application started successfully",
                extra={
                    "component": "app",
                    "source_id": self.config.telegram.source_id,
                    "output_type": self.config.output.type,
                    "topic": self.config.output.topic
                }
            )

            await self._wait_for_shutdown()

        except Exception as e:
            logger.error(f"Application error: {e}")
            raise

    async def _wait_for_shutdown(self) -> None:
        """Wait for shutdown signal, checking transport health periodically."""
        degraded_reported = False

        while not self._shutdown_event.is_set():
            if self.bridge_service and self.bridge_service.is_degraded and not degraded_reported:
                # Stays up so the operator can inspect it; an external restart recovers
                logger.critical(
                    "Bridge is degraded, reconnect ceiling reached",
                    extra={"component": "app", "source_id": self.config.telegram.source_id}
                )
                degraded_reported = True

            if self.transport:
                health_ok = await self.transport.check_health()
                if not health_ok:
                    logger.warning("Transport health check failed")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=30.0)
            except asyncio.TimeoutError:
                continue

        logger.info("Shutdown signal received, stopping application")

    @asynccontextmanager
    async def lifespan(self):
        """
        Context manager for application lifecycle.

        Handles setup and cleanup automatically.
        """
        try:
            await self.setup()
            yield self
        finally:
            await self.cleanup()

    async def get_stats(self) -> dict:
        """
        Get application statistics.

        Returns:
            Dictionary with current statistics
        """
        stats = {
            "application": "tg-kafka-bridge",
            "status": self._status(),
            "config": {
                "source_id": self.config.telegram.source_id,
                "output_type": self.config.output.type,
                "topic": self.config.output.topic,
                "workers": self.config.batch.workers
            }
        }

        if self.bridge_service:
            bridge_stats = await self.bridge_service.get_stats()
            stats["bridge"] = bridge_stats.model_dump()
            checkpoint = self.bridge_service.persisted_checkpoint
            stats["checkpoint"] = checkpoint.model_dump(mode="json") if checkpoint else None

        if self.pipeline:
            stats["pipeline"] = {
                "inflight_count": self.pipeline.inflight_count,
                "inflight_bytes": self.pipeline.inflight_bytes
            }

        return stats

    def _status(self) -> str:
        if self.bridge_service is None or not self.bridge_service.is_running:
            return "stopped"
        if self.bridge_service.is_degraded:
            return "degraded"
        if self._shutdown_event.is_set():
            return "stopping"
        return "running"


def _setup_logging(config: AppConfig) -> None:
    setup_logging(
        level=config.logging.level,
        service_name="tg-kafka-bridge",
        enable_json=config.logging.json_format,
        enable_correlation=config.logging.enable_correlation
    )


async def main() -> None:
    """
    Main entry point for the application.
    """
    try:
        config = load_config()
        _setup_logging(config)

        logger.info("Starting tg-kafka-bridge service")

        async with BridgeApplication(config).lifespan() as app:
            await app.run()

    except KeyboardInterrupt:
        logger.info("Service interrupted by user")
    except Exception as e:
        logger.error(f"Service failed: {e}")
        sys.exit(1)


# Health check for container health checks
async def health_check() -> bool:
    """
    Validate configuration and secrets.

    Returns:
        True if service appears healthy, False otherwise
    """
    try:
        config = load_config()
        validate_secrets_exist(config)
        return True

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return False


def run_cli() -> None:
    """Console entry point: run the service, or `healthcheck` for Docker."""
    if len(sys.argv) > 1 and sys.argv[1] == "healthcheck":
        healthy = asyncio.run(health_check())
        sys.exit(0 if healthy else 1)
    else:
        asyncio.run(main())


if __name__ == "__main__":
    run_cli()
