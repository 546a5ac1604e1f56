import pytest

from fakes import FakeClock, FakeTransport, InMemoryCheckpointStore, RecordingSleep


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def checkpoint_store():
    return InMemoryCheckpointStore()
