"""
Factory for transports and checkpoint stores.
"""

from ..config import CheckpointConfig, OutputConfig
from ..domain.ports import CheckpointStore, PublishTransport
from .checkpoint_store import FileCheckpointStore, RedisCheckpointStore
from .kafka_transport import KafkaTransport
from .redis_transport import RedisStreamTransport


class TransportFactory:
    """Factory for the configured downstream transport and checkpoint store."""

    @staticmethod
    def create_transport(output: OutputConfig) -> PublishTransport:
        """
        Create the PublishTransport for the configured output type.

        Args:
            output: Output configuration

        Returns:
            Transport instance, not yet connected

        Raises:
            ValueError: If the output type is unsupported
        """
        if output.type == "kafka":
            return TransportFactory._create_kafka_transport(output)
        elif output.type == "redis":
            return TransportFactory._create_redis_transport(output)
        else:
            raise ValueError(f"Unsupported output type: {output.type}")

    @staticmethod
    def create_checkpoint_store(checkpoint: CheckpointConfig) -> CheckpointStore:
        """
        Create the CheckpointStore for the configured backend.

        Raises:
            ValueError: If the backend is unsupported or misconfigured
        """
        if checkpoint.backend == "file":
            return FileCheckpointStore(checkpoint.path)
        elif checkpoint.backend == "redis":
            if not checkpoint.redis_url:
                raise ValueError("Redis checkpoint store missing required field: redis_url")
            if not checkpoint.redis_url.startswith(("redis://", "rediss://")):
                raise ValueError(f"Redis checkpoint store invalid URL format: {checkpoint.redis_url}")
            return RedisCheckpointStore(
                url=checkpoint.redis_url,
                key_prefix=checkpoint.key_prefix
            )
        else:
            raise ValueError(f"Unsupported checkpoint backend: {checkpoint.backend}")

    @staticmethod
    def _create_kafka_transport(output: OutputConfig) -> KafkaTransport:
        kafka = output.kafka
        return KafkaTransport(
            bootstrap_servers=kafka.bootstrap_servers,
            topic=output.topic,
            client_id=kafka.client_id,
            acks="all" if kafka.acks == "all" else int(kafka.acks),
            enable_idempotence=kafka.enable_idempotence,
            security_protocol=kafka.security_protocol,
            sasl_mechanism=kafka.sasl_mechanism,
            sasl_username=kafka.sasl_username,
            sasl_password=kafka.sasl_password,
            request_timeout_ms=kafka.request_timeout_ms,
            linger_ms=kafka.linger_ms,
            compression_type=kafka.compression_type
        )

    @staticmethod
    def _create_redis_transport(output: OutputConfig) -> RedisStreamTransport:
        redis_config = output.redis
        return RedisStreamTransport(
            url=redis_config.url,
            stream_key=output.topic,
            maxlen_approx=redis_config.maxlen_approx,
            max_connections=redis_config.max_connections,
            socket_timeout=redis_config.socket_timeout,
            socket_connect_timeout=redis_config.socket_connect_timeout
        )
