import asyncio
import json
from types import SimpleNamespace

import pytest
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from tg_kafka_bridge.adapters.kafka_transport import KafkaTransport
from tg_kafka_bridge.adapters.redis_transport import RedisStreamTransport
from tg_kafka_bridge.domain.ports import PublishError, PublishTransientFailure

from fakes import make_envelope


class FakeProducer:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.sent = []
        self.started = False
        self.stopped = False
        self.start_error = FakeProducer.next_start_error
        self.send_error = FakeProducer.next_send_error
        FakeProducer.instances.append(self)

    next_start_error = None
    next_send_error = None

    async def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def send(self, topic, value=None, key=None, headers=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append({"topic": topic, "value": value, "key": key, "headers": headers})
        future = asyncio.get_running_loop().create_future()
        future.set_result(SimpleNamespace(partition=0, offset=len(self.sent) - 1))
        return future

    async def partitions_for(self, topic):
        return {0, 1}

    async def stop(self):
        self.stopped = True


@pytest.fixture(autouse=True)
def reset_fake_producer():
    FakeProducer.instances = []
    FakeProducer.next_start_error = None
    FakeProducer.next_send_error = None


def make_kafka(**kwargs):
    return KafkaTransport(
        bootstrap_servers="kafka:9092",
        topic="telegram-updates",
        producer_factory=FakeProducer,
        **kwargs
    )


@pytest.mark.asyncio
async def test_kafka_producer_is_durable_by_default():
    transport = make_kafka()

    await transport.connect()

    kwargs = FakeProducer.instances[0].kwargs
    assert kwargs["acks"] == "all"
    assert kwargs["enable_idempotence"] is True
    assert kwargs["bootstrap_servers"] == "kafka:9092"
    assert "sasl_mechanism" not in kwargs
    assert await transport.check_health()


def test_kafka_sasl_ssl_settings():
    transport = make_kafka(
        security_protocol="SASL_SSL",
        sasl_mechanism="SCRAM-SHA-512",
        sasl_username="bridge",
        sasl_password="secret"
    )

    kwargs = transport._producer_kwargs
    assert kwargs["sasl_mechanism"] == "SCRAM-SHA-512"
    assert kwargs["sasl_plain_username"] == "bridge"
    assert kwargs["sasl_plain_password"] == "secret"
    assert kwargs["ssl_context"] is not None


@pytest.mark.asyncio
async def test_kafka_send_batch_keys_by_source():
    transport = make_kafka()
    await transport.connect()
    envelopes = [make_envelope(1), make_envelope(2)]

    locations = await transport.send_batch(envelopes)

    assert locations == ["0:0", "0:1"]
    sent = FakeProducer.instances[0].sent
    assert [record["key"] for record in sent] == [b"bot", b"bot"]
    assert json.loads(sent[1]["value"])["sequence"] == 2
    assert ("dedup_key", envelopes[0].dedup_key.encode("utf-8")) in sent[0]["headers"]


@pytest.mark.asyncio
async def test_kafka_send_without_connect_is_transient():
    with pytest.raises(PublishTransientFailure) as excinfo:
        await make_kafka().send_batch([make_envelope(1)])

    assert excinfo.value.disconnected


@pytest.mark.asyncio
async def test_kafka_connect_failure_is_transient():
    FakeProducer.next_start_error = KafkaConnectionError("no brokers")
    transport = make_kafka()

    with pytest.raises(PublishTransientFailure) as excinfo:
        await transport.connect()

    assert excinfo.value.disconnected
    assert FakeProducer.instances[0].stopped
    assert not await transport.check_health()


@pytest.mark.asyncio
async def test_kafka_reconnect_replaces_producer():
    transport = make_kafka()
    await transport.connect()
    await transport.connect()

    assert len(FakeProducer.instances) == 2
    assert FakeProducer.instances[0].stopped
    assert transport.producer is FakeProducer.instances[1]


@pytest.mark.asyncio
async def test_kafka_send_errors_are_classified():
    FakeProducer.next_send_error = KafkaTimeoutError()
    transport = make_kafka()
    await transport.connect()
    with pytest.raises(PublishTransientFailure):
        await transport.send_batch([make_envelope(1)])

    FakeProducer.next_send_error = KafkaError("record rejected")
    await transport.connect()
    with pytest.raises(PublishError):
        await transport.send_batch([make_envelope(1)])


@pytest.mark.asyncio
async def test_kafka_close_stops_producer():
    transport = make_kafka()
    await transport.connect()

    await transport.close()

    assert FakeProducer.instances[0].stopped
    assert transport.producer is None


class FakeRedisPipeline:
    def __init__(self, client):
        self.client = client
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def xadd(self, name, fields, maxlen=None, approximate=True):
        self.commands.append((name, fields, maxlen, approximate))

    async def execute(self):
        if self.client.execute_error is not None:
            raise self.client.execute_error
        self.client.streams.extend(self.commands)
        return [f"1700000000000-{index}".encode() for index in range(len(self.commands))]


class FakeRedisClient:
    def __init__(self):
        self.streams = []
        self.execute_error = None
        self.closed = False
        self.transactions = []

    async def ping(self):
        return True

    def pipeline(self, transaction=True):
        self.transactions.append(transaction)
        return FakeRedisPipeline(self)

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_redis_send_batch_in_one_transaction():
    client = FakeRedisClient()
    transport = RedisStreamTransport(url="redis://localhost:6379/0", stream_key="tg:updates", client=client)
    await transport.connect()

    ids = await transport.send_batch([make_envelope(1), make_envelope(2)])

    assert ids == ["1700000000000-0", "1700000000000-1"]
    assert client.transactions == [True]
    name, fields, maxlen, approximate = client.streams[0]
    assert name == "tg:updates"
    assert approximate and maxlen == 1_000_000
    assert fields["sequence"] == "1"
    assert json.loads(fields["data_json"])["source_id"] == "bot"


@pytest.mark.asyncio
async def test_redis_errors_are_classified():
    client = FakeRedisClient()
    transport = RedisStreamTransport(url="redis://localhost:6379/0", client=client)
    await transport.connect()

    client.execute_error = RedisConnectionError("reset by peer")
    with pytest.raises(PublishTransientFailure):
        await transport.send_batch([make_envelope(1)])

    client.execute_error = ResponseError("OOM")
    with pytest.raises(PublishError):
        await transport.send_batch([make_envelope(1)])

    await transport.close()
    assert client.closed
