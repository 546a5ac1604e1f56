"""
Update filters for tg-kafka-bridge.
Decide which bot updates are forwarded to the queue.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from ..domain.dto import InboundEvent
from ..domain.ports import UpdateFilter


logger = logging.getLogger(__name__)


def _decode(event: InboundEvent) -> Optional[Dict[str, Any]]:
    try:
        update = json.loads(event.payload)
    except (ValueError, UnicodeDecodeError):
        return None
    return update if isinstance(update, dict) else None


def _message_of(update: Dict[str, Any], include_channel_posts: bool) -> Optional[Dict[str, Any]]:
    message = update.get("message")
    if message is None and include_channel_posts:
        message = update.get("channel_post")
    return message if isinstance(message, dict) else None


class TextMessageFilter(UpdateFilter):
    """
    Filter for Bot API updates.

    Filters out:
    - Updates that are not messages (edits, callbacks, member changes)
    - Messages without text content
    - Messages from private (user) chats, unless allowed
    - Messages sent by bots, unless allowed
    """

    def __init__(
        self,
        allow_bots: bool = False,
        allow_private_chats: bool = False,
        include_channel_posts: bool = False,
        max_text_length: int = 4096
    ):
        """
        Initialize update filter.

        Args:
            allow_bots: Whether to forward messages from bots
            allow_private_chats: Whether to forward messages from private chats
            include_channel_posts: Whether channel posts count as messages
            max_text_length: Maximum allowed text length
        """
        self.allow_bots = allow_bots
        self.allow_private_chats = allow_private_chats
        self.include_channel_posts = include_channel_posts
        self.max_text_length = max_text_length

    def should_process(self, event: InboundEvent) -> bool:
        return self.get_filter_reason(event) is None

    def get_filter_reason(self, event: InboundEvent) -> Optional[str]:
        update = _decode(event)
        if update is None:
            return "not_json_object"

        message = _message_of(update, self.include_channel_posts)
        if message is None:
            return "not_message_update"

        text = message.get("text")
        if not isinstance(text, str) or not text.strip():
            return "no_text_content"

        if len(text) > self.max_text_length:
            return f"text_too_long_{len(text)}"

        chat = message.get("chat") or {}
        if chat.get("type") == "private" and not self.allow_private_chats:
            return "private_chat"

        sender = message.get("from") or {}
        if sender.get("is_bot") and not self.allow_bots:
            return "bot_message"

        return None


class ChatAllowListFilter(UpdateFilter):
    """
    Filter that only forwards messages from listed chats.
    """

    def __init__(self, chat_ids: List[int], include_channel_posts: bool = False):
        self.chat_ids = set(chat_ids)
        self.include_channel_posts = include_channel_posts

    def should_process(self, event: InboundEvent) -> bool:
        return self.get_filter_reason(event) is None

    def get_filter_reason(self, event: InboundEvent) -> Optional[str]:
        update = _decode(event) or {}
        message = _message_of(update, self.include_channel_posts) or {}
        chat_id = (message.get("chat") or {}).get("id")
        if chat_id not in self.chat_ids:
            return f"chat_not_allowed_{chat_id}"
        return None


class CompositeUpdateFilter(UpdateFilter):
    """
    Composite filter that applies multiple filters in order.
    The first filter that rejects an event provides the reason.
    """

    def __init__(self, filters: List[UpdateFilter]):
        self.filters = filters

    def should_process(self, event: InboundEvent) -> bool:
        return all(f.should_process(event) for f in self.filters)

    def get_filter_reason(self, event: InboundEvent) -> Optional[str]:
        for f in self.filters:
            reason = f.get_filter_reason(event)
            if reason is not None:
                return reason
        return None


def create_default_filter(
    allow_bots: bool = False,
    allow_private_chats: bool = False,
    include_channel_posts: bool = False,
    max_text_length: int = 4096,
    chat_ids: Optional[List[int]] = None
) -> UpdateFilter:
    """
    Create the default update filter.

    Args:
        allow_bots: Whether to forward messages from bots
        allow_private_chats: Whether to forward messages from private chats
        include_channel_posts: Whether channel posts count as messages
        max_text_length: Maximum allowed text length
        chat_ids: Optional allow-list of chat IDs

    Returns:
        Configured filter
    """
    filters: List[UpdateFilter] = [
        TextMessageFilter(
            allow_bots=allow_bots,
            allow_private_chats=allow_private_chats,
            include_channel_posts=include_channel_posts,
            max_text_length=max_text_length
        )
    ]
    if chat_ids:
        filters.append(ChatAllowListFilter(chat_ids, include_channel_posts=include_channel_posts))

    logger.info(
        "Created update filter",
        extra={
            "component": "filters",
            "allow_bots": allow_bots,
            "allow_private_chats": allow_private_chats,
            "include_channel_posts": include_channel_posts,
            "chat_allow_list": len(chat_ids or [])
        }
    )

    return CompositeUpdateFilter(filters)
