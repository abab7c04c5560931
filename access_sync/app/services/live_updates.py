"""Live grant/revoke push channel, one subscription per user email."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from itertools import count
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Type, Union

import httpx
from pydantic import ValidationError

from ..entitlements.models import EntitlementOrigin, normalize_email
from ..entitlements.resolver import NotificationResolver
from ..schemas.notifications import GrantNotification, PushEventType, RevokeNotification
from .backend_client import AccessBackendClient
from .exceptions import AccessBackendError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_MS = 3000
KEEPALIVE_EVENTS = frozenset({PushEventType.PING.value, "keepalive", "heartbeat"})


@dataclass(frozen=True)
class PushMessage:
    event: str
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


async def parse_event_stream(lines: AsyncIterable[str]) -> AsyncIterator[PushMessage]:
    """Parse ``text/event-stream`` lines into messages.

    Comment lines are dropped. A block is dispatched when it carries data or an
    explicit event name; blocks with only ``retry``/``id`` are still yielded so
    the transport can track them.
    """

    event: Optional[str] = None
    data_lines: List[str] = []
    event_id: Optional[str] = None
    retry: Optional[int] = None

    async for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        if line == "":
            if event is not None or data_lines or event_id is not None or retry is not None:
                yield PushMessage(
                    event=event or "message",
                    data="\n".join(data_lines),
                    id=event_id,
                    retry=retry,
                )
            event, data_lines, event_id, retry = None, [], None, None
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            event_id = value
        elif field == "retry" and value.isdigit():
            retry = int(value)


class PushTransport(Protocol):
    """Source of push messages for one email; owns reconnection."""

    def messages(self, email: str) -> AsyncIterator[PushMessage]:
        ...


class SSEPushTransport:
    """Server-sent events over httpx with ``EventSource``-style reconnection.

    After a dropped connection it waits the server-advertised ``retry`` delay
    and reconnects with ``Last-Event-ID``. A ``204`` or a non-retryable HTTP
    status ends the stream for good.
    """

    def __init__(
        self,
        client: AccessBackendClient,
        *,
        retry_ms: int = DEFAULT_RETRY_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._retry_ms = retry_ms
        self._sleep = sleep

    async def messages(self, email: str) -> AsyncIterator[PushMessage]:
        last_event_id: Optional[str] = None
        retry_ms = self._retry_ms
        while True:
            try:
                async with self._client.open_stream(email, last_event_id=last_event_id) as response:
                    if response.status_code == 204:
                        logger.info("Event stream closed by server", extra={"email": email})
                        return
                    async for message in parse_event_stream(response.aiter_lines()):
                        if message.retry is not None:
                            retry_ms = message.retry
                        if message.id is not None:
                            last_event_id = message.id
                        yield message
            except AccessBackendError as exc:
                if not exc.retryable:
                    logger.warning(
                        "Event stream rejected; not reconnecting",
                        extra={"email": email, "status_code": exc.status_code},
                    )
                    return
                logger.warning("Event stream failed", extra={"email": email, "error": exc.code})
            except httpx.HTTPError as exc:
                logger.warning("Event stream disconnected", extra={"email": email, "error": str(exc)})
            await self._sleep(retry_ms / 1000.0)


NotificationModel = Union[Type[GrantNotification], Type[RevokeNotification]]

_MESSAGE_MODELS: Dict[str, NotificationModel] = {
    PushEventType.GRANT.value: GrantNotification,
    PushEventType.REVOKE.value: RevokeNotification,
}


class LiveUpdateChannel:
    """Feeds one email's push messages into the resolver.

    Redelivered messages are harmless: a repeated grant rewrites the same
    record and a repeated revoke deletes nothing.
    """

    def __init__(self, email: str, transport: PushTransport, resolver: NotificationResolver) -> None:
        self.email = normalize_email(email)
        self._transport = transport
        self._resolver = resolver

    async def run(self) -> None:
        async for message in self._transport.messages(self.email):
            self.handle_message(message)

    def handle_message(self, message: PushMessage) -> bool:
        if message.event in KEEPALIVE_EVENTS:
            return False
        model = _MESSAGE_MODELS.get(message.event)
        if model is None:
            logger.debug("Ignoring push message", extra={"event": message.event})
            return False
        try:
            payload = json.loads(message.data or "{}")
            if not isinstance(payload, dict):
                raise ValueError("push payload must be an object")
            payload.setdefault("email", self.email)
            notification = model.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            logger.warning(
                "Discarding malformed push message",
                extra={"event": message.event, "error": str(exc)},
            )
            return False
        if notification.email != self.email:
            logger.debug("Ignoring push message for another email", extra={"event": message.event})
            return False
        self._resolver.on_notification(notification, origin=EntitlementOrigin.PUSH)
        return True


@dataclass(frozen=True)
class ChannelHandle:
    email: str
    handle_id: int


class LiveUpdateHub:
    """Reference-counts live channels so each email holds one subscription."""

    def __init__(self, transport: PushTransport, resolver: NotificationResolver) -> None:
        self._transport = transport
        self._resolver = resolver
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._handles: Dict[str, Set[int]] = {}
        self._ids = count(1)

    def open(self, email: str) -> ChannelHandle:
        normalized = normalize_email(email)
        if not normalized:
            raise ValueError("email is required to open a live update channel")
        task = self._tasks.get(normalized)
        if task is None or task.done():
            channel = LiveUpdateChannel(normalized, self._transport, self._resolver)
            task = asyncio.get_running_loop().create_task(channel.run())
            task.add_done_callback(self._log_exit)
            self._tasks[normalized] = task
            logger.info("Opened live update channel", extra={"email": normalized})
        handle = ChannelHandle(email=normalized, handle_id=next(self._ids))
        self._handles.setdefault(normalized, set()).add(handle.handle_id)
        return handle

    async def close(self, handle: ChannelHandle) -> None:
        handles = self._handles.get(handle.email)
        if not handles or handle.handle_id not in handles:
            return
        handles.discard(handle.handle_id)
        if handles:
            return
        self._handles.pop(handle.email, None)
        task = self._tasks.pop(handle.email, None)
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Closed live update channel", extra={"email": handle.email})

    async def aclose(self) -> None:
        for email in list(self._tasks):
            for handle_id in list(self._handles.get(email, ())):
                await self.close(ChannelHandle(email=email, handle_id=handle_id))

    def is_open(self, email: str) -> bool:
        task = self._tasks.get(normalize_email(email))
        return task is not None and not task.done()

    @staticmethod
    def _log_exit(task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Live update channel crashed", exc_info=exc)
