"""
Redis Streams transport for tg-kafka-bridge.
Appends envelope batches to a stream inside one MULTI/EXEC transaction.
"""

import json
import logging
from typing import Dict, List, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from ..domain.dto import Envelope
from ..domain.ports import PublishError, PublishTransientFailure, PublishTransport


logger = logging.getLogger(__name__)


class RedisStreamTransport(PublishTransport):
    """
    Redis Streams implementation of PublishTransport.
    A batch is written atomically: either every XADD lands or none does.
    """

    def __init__(
        self,
        url: str,
        stream_key: str = "tg:updates",
        maxlen_approx: int = 1_000_000,
        max_connections: int = 10,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        client: Optional[redis.Redis] = None
    ):
        """
        Initialize Redis Streams transport.

        Args:
            url: Redis URL (redis:// or rediss://)
            stream_key: Stream to append to
            maxlen_approx: Approximate max length for stream trimming
            max_connections: Connection pool size
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Connect timeout in seconds
            client: Pre-built client, used by tests
        """
        self.url = url
        self.stream_key = stream_key
        self.maxlen_approx = maxlen_approx

        self.connection_kwargs = {
            "max_connections": max_connections,
            "socket_timeout": socket_timeout,
            "socket_connect_timeout": socket_connect_timeout,
            "retry_on_timeout": True,
            "health_check_interval": 30
        }

        self.client: Optional[redis.Redis] = client
        self._connected = False

    async def connect(self) -> None:
        """
        Connect to Redis and ping it.

        Raises:
            PublishTransientFailure: If Redis cannot be reached
        """
        try:
            if self.client is None:
                pool = redis.ConnectionPool.from_url(self.url, **self.connection_kwargs)
                self.client = redis.Redis(connection_pool=pool)

            await self.client.ping()
            self._connected = True

            logger.info(
                f"Connected to Redis: {self.stream_key}",
                extra={"component": "redis_transport", "stream_key": self.stream_key}
            )

        except RedisError as e:
            self._connected = False
            raise PublishTransientFailure(f"Redis connection failed: {e}", disconnected=True) from e

    async def send_batch(self, envelopes: Sequence[Envelope]) -> List[str]:
        """
        XADD every envelope in one transaction.

        Returns:
            Stream ids in envelope order

        Raises:
            PublishTransientFailure: On connection or timeout errors
            PublishError: On other Redis errors
        """
        if not self._connected or self.client is None:
            raise PublishTransientFailure("Not connected to Redis", disconnected=True)

        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for envelope in envelopes:
                    pipe.xadd(
                        self.stream_key,
                        self._prepare_stream_data(envelope),
                        maxlen=self.maxlen_approx,
                        approximate=True
                    )
                stream_ids = await pipe.execute()

        except (RedisConnectionError, RedisTimeoutError) as e:
            raise PublishTransientFailure(f"Redis unavailable: {e}", disconnected=True) from e

        except RedisError as e:
            logger.error(
                f"Redis write error: {e}",
                extra={
                    "component": "redis_transport",
                    "stream_key": self.stream_key,
                    "batch_size": len(envelopes),
                    "error": str(e)
                }
            )
            raise PublishError(f"Redis write failed: {e}") from e

        return [
            stream_id.decode("utf-8") if isinstance(stream_id, bytes) else str(stream_id)
            for stream_id in stream_ids
        ]

    def _prepare_stream_data(self, envelope: Envelope) -> Dict[str, str]:
        """
        Prepare fields for XADD.
        Redis requires string values.
        """
        record = envelope.to_record()
        return {
            "key": envelope.dedup_key,
            "source_id": envelope.source_id,
            "sequence": str(envelope.sequence),
            "received_at": record["received_at"],
            "data_json": json.dumps(record, ensure_ascii=False),
            "headers_json": json.dumps(envelope.record_headers())
        }

    async def check_health(self) -> bool:
        """Check Redis with PING."""
        try:
            if self.client is None:
                return False
            await self.client.ping()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close the Redis connection."""
        try:
            if self.client is not None:
                await self.client.aclose()
                self.client = None
            self._connected = False
            logger.info("Redis transport closed")

        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
