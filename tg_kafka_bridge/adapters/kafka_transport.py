"""
Kafka transport for tg-kafka-bridge.
Appends envelope batches to a Kafka topic with an idempotent aiokafka producer.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.helpers import create_ssl_context

from ..domain.dto import Envelope
from ..domain.ports import PublishError, PublishTransientFailure, PublishTransport


logger = logging.getLogger(__name__)


class KafkaTransport(PublishTransport):
    """
    aiokafka-based implementation of PublishTransport.

    Records are keyed by source id so that every record of a source lands
    on one partition and keeps its order.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        client_id: str = "tg-kafka-bridge",
        acks: Union[str, int] = "all",
        enable_idempotence: bool = True,
        security_protocol: str = "PLAINTEXT",
        sasl_mechanism: Optional[str] = None,
        sasl_username: Optional[str] = None,
        sasl_password: Optional[str] = None,
        request_timeout_ms: int = 30000,
        linger_ms: int = 5,
        compression_type: Optional[str] = None,
        producer_factory: Callable[..., Any] = AIOKafkaProducer
    ):
        """
        Initialize Kafka transport.

        Args:
            bootstrap_servers: Comma-separated host:port list
            topic: Destination topic
            client_id: Kafka client id
            acks: Producer acks ("all" for durable writes)
            enable_idempotence: Idempotent producer (no duplicates on producer retries)
            security_protocol: PLAINTEXT, SSL, SASL_PLAINTEXT or SASL_SSL
            sasl_mechanism: e.g. SCRAM-SHA-512
            sasl_username: SASL username
            sasl_password: SASL password
            request_timeout_ms: Produce request timeout
            linger_ms: Producer-side linger
            compression_type: gzip, snappy, lz4, zstd or None
            producer_factory: Producer constructor, replaced in tests
        """
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self._producer_factory = producer_factory

        self._producer_kwargs: Dict[str, Any] = {
            "bootstrap_servers": bootstrap_servers,
            "client_id": client_id,
            "acks": acks,
            "enable_idempotence": enable_idempotence,
            "security_protocol": security_protocol,
            "request_timeout_ms": request_timeout_ms,
            "linger_ms": linger_ms,
            "compression_type": compression_type,
        }
        if sasl_mechanism:
            self._producer_kwargs.update({
                "sasl_mechanism": sasl_mechanism,
                "sasl_plain_username": sasl_username,
                "sasl_plain_password": sasl_password,
            })
        if security_protocol in ("SSL", "SASL_SSL"):
            self._producer_kwargs["ssl_context"] = create_ssl_context()

        self.producer: Optional[Any] = None
        self._connected = False

    async def connect(self) -> None:
        """
        Start a fresh producer.

        Raises:
            PublishTransientFailure: If the cluster cannot be reached
        """
        await self._stop_producer()

        producer = self._producer_factory(**self._producer_kwargs)
        try:
            await producer.start()
        except (KafkaConnectionError, KafkaTimeoutError, OSError) as e:
            await self._stop_quietly(producer)
            raise PublishTransientFailure(f"Kafka connection failed: {e}", disconnected=True) from e
        except KafkaError as e:
            await self._stop_quietly(producer)
            if getattr(e, "retriable", False):
                raise PublishTransientFailure(f"Kafka connection failed: {e}", disconnected=True) from e
            raise PublishError(f"Kafka producer start failed: {e}") from e

        self.producer = producer
        self._connected = True

        logger.info(
            f"Connected to Kafka: {self.bootstrap_servers}",
            extra={
                "component": "kafka_transport",
                "topic": self.topic,
                "security_protocol": self._producer_kwargs["security_protocol"]
            }
        )

    async def send_batch(self, envelopes: Sequence[Envelope]) -> List[str]:
        """
        Produce a batch and wait for every record to be acknowledged.

        Returns:
            "partition:offset" for each envelope

        Raises:
            PublishTransientFailure: On retriable Kafka errors
            PublishError: On non-retriable Kafka errors
        """
        if not self._connected or self.producer is None:
            raise PublishTransientFailure("Kafka producer not connected", disconnected=True)

        try:
            pending = []
            for envelope in envelopes:
                pending.append(await self.producer.send(
                    self.topic,
                    value=json.dumps(envelope.to_record(), ensure_ascii=False).encode("utf-8"),
                    key=envelope.source_id.encode("utf-8"),
                    headers=[(k, v.encode("utf-8")) for k, v in envelope.record_headers().items()]
                ))
            metadata = await asyncio.gather(*pending)

        except (KafkaConnectionError, KafkaTimeoutError) as e:
            raise PublishTransientFailure(f"Kafka unavailable: {e}", disconnected=True) from e

        except KafkaError as e:
            if getattr(e, "retriable", False):
                raise PublishTransientFailure(f"Kafka retriable error: {e}") from e
            logger.error(
                f"Kafka write error: {e}",
                extra={
                    "component": "kafka_transport",
                    "topic": self.topic,
                    "batch_size": len(envelopes),
                    "error": str(e)
                }
            )
            raise PublishError(f"Kafka write failed: {e}") from e

        locations = [f"{md.partition}:{md.offset}" for md in metadata]

        logger.debug(
            "Batch written to Kafka",
            extra={
                "component": "kafka_transport",
                "topic": self.topic,
                "batch_size": len(envelopes),
                "first_location": locations[0] if locations else None
            }
        )

        return locations

    async def check_health(self) -> bool:
        """Check that topic metadata can be fetched."""
        try:
            if not self._connected or self.producer is None:
                return False
            partitions = await self.producer.partitions_for(self.topic)
            return bool(partitions)
        except Exception as e:
            logger.warning(
                f"Kafka health check failed: {e}",
                extra={"component": "kafka_transport", "error": str(e)}
            )
            return False

    async def close(self) -> None:
        """Flush pending records and stop the producer."""
        await self._stop_producer()
        logger.info("Kafka transport closed")

    async def _stop_producer(self) -> None:
        if self.producer is not None:
            await self._stop_quietly(self.producer)
            self.producer = None
        self._connected = False

    @staticmethod
    async def _stop_quietly(producer: Any) -> None:
        try:
            await producer.stop()
        except Exception as e:
            logger.warning(f"Error stopping Kafka producer: {e}")
