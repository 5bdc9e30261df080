"""Per-request chat with delivery and read-receipt semantics.

The log is append-only and ordered by store-assigned timestamps. Realtime
events can arrive late, twice, or out of order, so everything that reaches
the local log goes through ``ChatLog.apply`` which dedupes by id, re-sorts,
and never lets a message become unseen again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from core.config import ChatConfig
from core.errors import Forbidden, UpstreamUnavailable, ValidationFailed
from core.matching import load_request
from core.models import Message, RealtimeEvent, Request, UserProfile
from core.ports import RealtimePort, StorePort

LOGGER = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def message_row(message: Message) -> dict:
    return {
        "id": message.id,
        "request_id": message.request_id,
        "sender_id": message.sender_id,
        "content": message.content,
        "created_at": message.created_at,
        "seen": message.seen,
        "seen_at": message.seen_at,
    }


class ChatLog:
    """Local ordered view of one request's messages."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self._by_id: Dict[str, Message] = {}

    def __len__(self) -> int:
        return len(self._by_id)

    def messages(self) -> Tuple[Message, ...]:
        return tuple(sorted(self._by_id.values(), key=lambda message: message.sort_key))

    def merge(self, incoming: Message) -> bool:
        """Merge one message; return True when the visible state changed."""

        if incoming.request_id != self.request_id:
            return False
        current = self._by_id.get(incoming.id)
        if current is not None and current.seen and not incoming.seen:
            # Seen-state only ever moves forward.
            incoming = Message(
                id=incoming.id,
                request_id=incoming.request_id,
                sender_id=incoming.sender_id,
                content=incoming.content,
                created_at=incoming.created_at,
                seen=True,
                seen_at=current.seen_at,
            )
        if current == incoming:
            return False
        self._by_id[incoming.id] = incoming
        return True

    def merge_all(self, messages: Iterable[Message]) -> bool:
        changed = False
        for message in messages:
            changed = self.merge(message) or changed
        return changed

    def apply(self, event: RealtimeEvent) -> bool:
        """Interpret a realtime payload and fold it into the log."""

        if event.table != MESSAGES_TABLE or event.event_type not in {"insert", "update"}:
            return False
        row = dict(event.row)
        current = self._by_id.get(str(row.get("id")))
        if current is not None:
            # Update payloads may carry only the changed columns.
            row = {**message_row(current), **row}
        try:
            message = Message.from_row(row)
        except (KeyError, ValueError):
            LOGGER.warning("Ignoring malformed message event for %s", self.request_id)
            return False
        return self.merge(message)


def seen_marker_id(messages: Iterable[Message], viewer_id: str) -> Optional[str]:
    """Id of the newest message sent by the viewer that the other side has seen.

    Only this one message gets the "Seen" label.
    """

    marker = None
    for message in sorted(messages, key=lambda item: item.sort_key):
        if message.sender_id == viewer_id and message.seen:
            marker = message.id
    return marker


@dataclass(frozen=True)
class ChatRoles:
    """Who the viewer is talking to, and whether the call button shows."""

    viewer_is_helper: bool
    counterpart_id: Optional[str]
    counterpart: Optional[UserProfile]
    call_link: Optional[str]


class MessagingChannel:
    """Send, read, follow and acknowledge the chat of one request."""

    def __init__(
        self,
        store: StorePort,
        realtime: Optional[RealtimePort] = None,
        config: Optional[ChatConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._realtime = realtime
        self._config = config or ChatConfig()
        self._clock = clock

    def _helper_ids(self, request: Request) -> set[str]:
        helpers = set()
        match = self._store.latest_match(request.request_id)
        if match is not None:
            helpers.add(match.helper_id)
        if request.legacy_helper_id:
            helpers.add(request.legacy_helper_id)
        return helpers

    def send(self, request_id: str, sender_id: str, body: str) -> Message:
        content = (body or "").strip()
        if not content:
            raise ValidationFailed("Message cannot be empty.")
        request = load_request(self._store, request_id)
        if sender_id != request.buyer_id and sender_id not in self._helper_ids(request):
            raise Forbidden("Only the buyer and the helper can chat about this request.")
        message = self._store.insert_message(request_id, sender_id, content)
        LOGGER.debug("Message %s sent on %s", message.id, request_id)
        return message

    def history(self, request_id: str) -> List[Message]:
        log = ChatLog(request_id)
        log.merge_all(self._store.list_messages(request_id))
        return list(log.messages())

    def mark_seen(self, request_id: str, viewer_id: str) -> int:
        """Flag every unseen message from the other party as seen, in one write."""

        flipped = self._store.mark_messages_seen(request_id, viewer_id, self._clock())
        if flipped:
            LOGGER.debug("Marked %s message(s) seen on %s for %s", flipped, request_id, viewer_id)
        return flipped

    def resolve_roles(self, request_id: str, viewer_id: str) -> ChatRoles:
        """Work out the viewer's role.

        The latest match decides who the helper is; the legacy helper_id on
        the request row is consulted only when the match does not name the
        viewer.
        """

        request = load_request(self._store, request_id)
        match = self._store.latest_match(request_id)
        match_helper = match.helper_id if match is not None else None

        if match_helper is not None and match_helper == viewer_id:
            is_helper, counterpart_id = True, request.buyer_id
        elif request.legacy_helper_id and request.legacy_helper_id == viewer_id:
            LOGGER.debug("Helper role for %s resolved from legacy helper_id", request_id)
            is_helper, counterpart_id = True, request.buyer_id
        elif viewer_id == request.buyer_id:
            is_helper, counterpart_id = False, match_helper or request.legacy_helper_id
        else:
            raise Forbidden("You are not part of this conversation.")

        counterpart = self._store.get_user(counterpart_id) if counterpart_id else None
        call_link = None
        if is_helper and counterpart is not None and counterpart.phone:
            call_link = f"tel:{counterpart.phone}"
        return ChatRoles(
            viewer_is_helper=is_helper,
            counterpart_id=counterpart_id,
            counterpart=counterpart,
            call_link=call_link,
        )

    async def follow(self, request_id: str) -> AsyncIterator[Tuple[Message, ...]]:
        """Yield the ordered log every time it changes.

        The subscription is opened before the history fetch so nothing
        slips between the two; duplicates are absorbed by the log. When the
        feed drops we wait, re-subscribe and re-fetch to cover the gap.
        """

        if self._realtime is None:
            raise UpstreamUnavailable("Live chat is not available.")

        log = ChatLog(request_id)
        reconnects = 0
        while True:
            stream = self._realtime.subscribe(MESSAGES_TABLE, {"request_id": request_id})
            try:
                history = await asyncio.to_thread(self._store.list_messages, request_id)
                if log.merge_all(history) or reconnects == 0:
                    yield log.messages()
                async for event in stream:
                    if log.apply(event):
                        yield log.messages()
                LOGGER.info("Chat feed for %s closed", request_id)
                return
            except UpstreamUnavailable:
                LOGGER.warning("Chat feed for %s dropped", request_id)
            finally:
                close = getattr(stream, "aclose", None)
                if close is not None:
                    await close()

            reconnects += 1
            if self._config.max_reconnects and reconnects > self._config.max_reconnects:
                return
            await asyncio.sleep(self._config.reconnect_delay_seconds)
