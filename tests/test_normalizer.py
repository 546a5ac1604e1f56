from tg_kafka_bridge.domain.dto import Checkpoint, Envelope, PublishStatus
from tg_kafka_bridge.services.normalizer import DedupWindow, EventNormalizer

from fakes import FakeClock, make_event


def test_sequences_increase_per_source():
    normalizer = EventNormalizer(DedupWindow())

    first = normalizer.normalize(make_event(10, source_id="a"))
    second = normalizer.normalize(make_event(11, source_id="a"))
    other = normalizer.normalize(make_event(10, source_id="b"))

    assert (first.sequence, second.sequence, other.sequence) == (1, 2, 1)
    assert first.envelope_id == "a:1"
    assert first.status == PublishStatus.PENDING
    assert first.checkpoint_token == "10"
    assert normalizer.last_sequence("a") == 2


def test_acknowledged_key_is_discarded():
    normalizer = EventNormalizer(DedupWindow())
    event = make_event(7)

    envelope = normalizer.normalize(event)
    normalizer.acknowledge(envelope.dedup_key)

    assert normalizer.normalize(event) is None
    # A discarded duplicate does not consume a sequence number
    assert normalizer.normalize(make_event(8)).sequence == 2


def test_unacknowledged_duplicate_is_not_discarded():
    normalizer = EventNormalizer(DedupWindow())

    first = normalizer.normalize(make_event(7))
    again = normalizer.normalize(make_event(7))

    assert again is not None
    assert again.dedup_key == first.dedup_key
    assert again.sequence == first.sequence + 1


def test_seed_continues_above_checkpoint():
    normalizer = EventNormalizer(DedupWindow())
    normalizer.seed(Checkpoint(source_id="bot", sequence=41, token="99"))

    assert normalizer.normalize(make_event(100)).sequence == 42


def test_dedup_key_depends_on_payload_and_source():
    key = Envelope.create_dedup_key("bot", "1", b"a")

    assert len(key) == 64
    assert key == Envelope.create_dedup_key("bot", "1", b"a")
    assert key != Envelope.create_dedup_key("bot", "1", b"b")
    assert key != Envelope.create_dedup_key("other", "1", b"a")


def test_window_is_bounded_by_count():
    window = DedupWindow(max_entries=2)

    window.remember("a")
    window.remember("b")
    window.remember("c")

    assert "a" not in window
    assert "b" in window and "c" in window
    assert len(window) == 2


def test_window_refresh_moves_key_to_newest():
    window = DedupWindow(max_entries=2)

    window.remember("a")
    window.remember("b")
    window.remember("a")
    window.remember("c")

    assert "a" in window
    assert "b" not in window


def test_window_expires_old_keys():
    clock = FakeClock()
    window = DedupWindow(max_entries=10, ttl_seconds=5.0, clock=clock)

    window.remember("a")
    clock.now = 3.0
    window.remember("b")
    clock.now = 6.0

    assert "a" not in window
    assert "b" in window

    clock.now = 9.0
    assert len(window) == 0


def test_duplicate_outside_window_is_republished():
    clock = FakeClock()
    normalizer = EventNormalizer(DedupWindow(ttl_seconds=60.0, clock=clock))
    event = make_event(5)

    normalizer.acknowledge(normalizer.normalize(event).dedup_key)
    clock.now = 61.0

    assert normalizer.normalize(event) is not None
