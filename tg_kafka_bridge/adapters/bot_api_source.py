"""
Telegram Bot API update source for tg-kafka-bridge.
Long-polls getUpdates over HTTPS and yields inbound events.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
from httpx import RequestError

from ..domain.dto import Checkpoint, InboundEvent, utc_now
from ..domain.ports import MalformedUpdate, SourceUnavailable, UpdateSource


logger = logging.getLogger(__name__)


class BotApiUpdateSource(UpdateSource):
    """
    Bot API long-poll implementation of UpdateSource.

    Passing an offset to getUpdates confirms every earlier update on
    Telegram's side, so the requested offset only moves past updates whose
    checkpoint was persisted (see `confirm`). Updates received but not yet
    confirmed come back on later polls and are skipped by update_id; at most
    `limit` of them are redelivered per poll.
    """

    def __init__(
        self,
        bot_token: str,
        source_id: str,
        api_url: str = "https://api.telegram.org",
        poll_timeout_s: int = 30,
        limit: int = 100,
        allowed_updates: Optional[List[str]] = None,
        request_timeout_margin_s: float = 10.0,
        stale_poll_delay_s: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize Bot API update source.

        Args:
            bot_token: Bot token from @BotFather
            source_id: Feed identifier used for envelopes and checkpoints
            api_url: Bot API root URL
            poll_timeout_s: Long-poll timeout passed to getUpdates
            limit: Maximum updates per poll (1-100)
            allowed_updates: Update types to receive, None for Telegram's default
            request_timeout_margin_s: HTTP read timeout on top of poll_timeout_s
            stale_poll_delay_s: Pause after a poll that returned only already-seen updates
            transport: Custom httpx transport, used by tests
            sleep: Awaitable sleep, injectable for tests
        """
        self.source_id = source_id
        self.api_url = api_url.rstrip("/")
        self.poll_timeout_s = poll_timeout_s
        self.limit = limit
        self.allowed_updates = allowed_updates
        self.stale_poll_delay_s = stale_poll_delay_s
        self._base_url = f"{self.api_url}/bot{bot_token}/"
        self._transport = transport
        self._sleep = sleep
        self._timeout = httpx.Timeout(10.0, read=poll_timeout_s + request_timeout_margin_s)

        self.client: Optional[httpx.AsyncClient] = None
        self._offset: Optional[int] = None
        self._last_seen: Optional[int] = None
        self.bot_username: Optional[str] = None

    @property
    def offset(self) -> Optional[int]:
        """Offset sent with the next getUpdates, None before the first confirm."""
        return self._offset

    @property
    def last_seen(self) -> Optional[int]:
        """Highest update_id yielded so far."""
        return self._last_seen

    async def connect(self) -> None:
        """
        Open the HTTP client and validate the token with getMe.

        Raises:
            SourceUnavailable: If the Bot API cannot be reached or rejects the token
        """
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": "tg-kafka-bridge/1.0"},
                transport=self._transport,
                limits=httpx.Limits(max_keepalive_connections=2, max_connections=4)
            )

        me = await self._call("getMe", {})
        self.bot_username = me.get("username")

        logger.info(
            f"Connected to Bot API as @{self.bot_username}",
            extra={
                "component": "bot_api_source",
                "source_id": self.source_id,
                "bot_id": me.get("id"),
                "offset": self._offset
            }
        )

    def resume_from(self, checkpoint: Optional[Checkpoint]) -> None:
        """
        Request updates after the checkpoint token on the next poll.

        Updates already yielded stay skipped, since they are still tracked
        downstream.
        """
        if checkpoint is None:
            self._offset = None
            return

        update_id = self._update_id(checkpoint)
        self._offset = update_id + 1
        if self._last_seen is None or update_id > self._last_seen:
            self._last_seen = update_id

        logger.info(
            f"Resuming {self.source_id} from offset {self._offset}",
            extra={
                "component": "bot_api_source",
                "source_id": self.source_id,
                "checkpoint_sequence": checkpoint.sequence,
                "offset": self._offset
            }
        )

    def confirm(self, checkpoint: Checkpoint) -> None:
        """Let the next poll confirm everything up to a persisted checkpoint."""
        offset = self._update_id(checkpoint) + 1
        if self._offset is None or offset > self._offset:
            self._offset = offset
            logger.debug(
                f"Offset for {self.source_id} moved to {offset}",
                extra={
                    "component": "bot_api_source",
                    "source_id": self.source_id,
                    "checkpoint_sequence": checkpoint.sequence,
                    "offset": offset
                }
            )

    @staticmethod
    def _update_id(checkpoint: Checkpoint) -> int:
        try:
            return int(checkpoint.token)
        except ValueError as e:
            raise ValueError(f"Checkpoint token is not an update_id: {checkpoint.token!r}") from e

    async def poll(self) -> AsyncIterator[InboundEvent]:
        """
        One getUpdates long poll.

        Yields:
            Inbound events in update_id order

        Raises:
            SourceUnavailable: On connection loss or Bot API errors
        """
        params: Dict[str, Any] = {"timeout": self.poll_timeout_s, "limit": self.limit}
        if self._offset is not None:
            params["offset"] = self._offset
        if self.allowed_updates is not None:
            params["allowed_updates"] = json.dumps(self.allowed_updates)

        updates = await self._call("getUpdates", params)
        if not isinstance(updates, list):
            raise SourceUnavailable(f"Unexpected getUpdates result: {type(updates).__name__}")

        stale = 0
        for raw in updates:
            try:
                event = self._to_event(raw)
            except MalformedUpdate as e:
                self.malformed_count += 1
                logger.warning(
                    f"Skipping malformed update: {e}",
                    extra={
                        "component": "bot_api_source",
                        "source_id": self.source_id,
                        "error": str(e)
                    }
                )
                continue

            update_id = int(event.external_id)
            if self._last_seen is not None and update_id <= self._last_seen:
                stale += 1
                continue

            self._last_seen = update_id
            yield event

        # Unconfirmed backlog only: long poll returns at once until acks catch up
        if updates and stale == len(updates):
            await self._sleep(self.stale_poll_delay_s)

    def _to_event(self, raw: Any) -> InboundEvent:
        """
        Convert one raw update into an InboundEvent.

        Raises:
            MalformedUpdate: If the update has no integer update_id
        """
        if not isinstance(raw, dict):
            raise MalformedUpdate(f"Update is not an object: {type(raw).__name__}")

        update_id = raw.get("update_id")
        if not isinstance(update_id, int) or isinstance(update_id, bool):
            raise MalformedUpdate(f"Update has no integer update_id: {update_id!r}")

        # Canonical encoding so that redelivered updates hash identically
        payload = json.dumps(raw, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

        return InboundEvent(
            source_id=self.source_id,
            external_id=str(update_id),
            received_at=utc_now(),
            payload=payload,
            checkpoint_token=str(update_id)
        )

    async def _call(self, method: str, params: Dict[str, Any]) -> Any:
        """
        Call a Bot API method and return its `result`.

        Raises:
            SourceUnavailable: On transport errors, non-2xx answers or ok=false
        """
        if self.client is None:
            raise SourceUnavailable("Bot API client is not connected")

        try:
            response = await self.client.post(self._base_url + method, data=params)
        except RequestError as e:
            raise SourceUnavailable(f"Bot API request error: {e}") from e

        status_code = response.status_code
        if status_code in (401, 404):
            logger.error(
                "Bot API rejected the token",
                extra={
                    "component": "bot_api_source",
                    "source_id": self.source_id,
                    "method": method,
                    "status_code": status_code
                }
            )
            raise SourceUnavailable(f"Bot API rejected the token ({status_code})")
        if status_code == 429:
            raise SourceUnavailable("Rate limited by Bot API")
        if status_code == 409:
            raise SourceUnavailable("Conflict: another getUpdates consumer or an active webhook")
        if status_code >= 500:
            raise SourceUnavailable(f"Bot API server error: {status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise SourceUnavailable(f"Bot API returned invalid JSON: {e}") from e

        if not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description") if isinstance(body, dict) else None
            raise SourceUnavailable(f"Bot API error on {method}: {description or status_code}")

        return body.get("result")

    async def close(self) -> None:
        """Close HTTP client and cleanup resources."""
        if self.client is not None:
            await self.client.aclose()
            self.client = None
        logger.debug("Bot API source closed")
