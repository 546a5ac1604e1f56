from tg_kafka_bridge.adapters.filters import (
    ChatAllowListFilter,
    TextMessageFilter,
    create_default_filter,
)
from tg_kafka_bridge.domain.dto import InboundEvent

from fakes import make_event


def raw_event(payload: bytes) -> InboundEvent:
    return InboundEvent(source_id="bot", external_id="1", payload=payload, checkpoint_token="1")


def test_group_text_message_passes():
    update_filter = TextMessageFilter()

    assert update_filter.should_process(make_event(1))
    assert update_filter.get_filter_reason(make_event(1)) is None


def test_rejections_carry_reasons():
    update_filter = TextMessageFilter(max_text_length=10)

    assert update_filter.get_filter_reason(raw_event(b"[1, 2]")) == "not_json_object"
    assert update_filter.get_filter_reason(raw_event(b"\xff")) == "not_json_object"
    assert update_filter.get_filter_reason(
        raw_event(b'{"update_id": 1, "edited_message": {"text": "hi"}}')
    ) == "not_message_update"
    assert update_filter.get_filter_reason(make_event(1, text=None)) == "no_text_content"
    assert update_filter.get_filter_reason(make_event(1, text="   ")) == "no_text_content"
    assert update_filter.get_filter_reason(make_event(1, text="x" * 11)) == "text_too_long_11"
    assert update_filter.get_filter_reason(make_event(1, chat_type="private")) == "private_chat"
    assert update_filter.get_filter_reason(make_event(1, is_bot=True)) == "bot_message"


def test_options_relax_rules():
    update_filter = TextMessageFilter(allow_bots=True, allow_private_chats=True)

    assert update_filter.should_process(make_event(1, is_bot=True))
    assert update_filter.should_process(make_event(1, chat_type="private"))


def test_channel_posts_only_when_enabled():
    post = raw_event(b'{"update_id": 1, "channel_post": {"text": "news", "chat": {"id": -100, "type": "channel"}}}')

    assert not TextMessageFilter().should_process(post)
    assert TextMessageFilter(include_channel_posts=True).should_process(post)


def test_chat_allow_list():
    update_filter = ChatAllowListFilter([-1001])

    assert update_filter.should_process(make_event(1, chat_id=-1001))
    assert update_filter.get_filter_reason(make_event(1, chat_id=-5)) == "chat_not_allowed_-5"


def test_default_filter_combines_rules():
    update_filter = create_default_filter(chat_ids=[-1001])

    assert update_filter.should_process(make_event(1, chat_id=-1001))
    assert update_filter.get_filter_reason(make_event(1, chat_id=-1001, is_bot=True)) == "bot_message"
    assert update_filter.get_filter_reason(make_event(1, chat_id=-7)) == "chat_not_allowed_-7"
