"""A terminal publisher that hands every message to an event handler."""

from __future__ import annotations

from typing import Awaitable, Callable, Union

from mq_bridge.outcomes import CanonicalMessage, Sent, SentBatch
from mq_bridge.traits import EventHandler, MessagePublisher, send_batch_helper

EventCallable = Callable[[CanonicalMessage], Awaitable[None]]


class EventHandlerPublisher(MessagePublisher):
    """Passes messages to an event handler instead of the inner publisher.

    The inner publisher is kept only to preserve the middleware chain; it is
    never called. The handler may be an `EventHandler` or an async callable.
    """

    def __init__(
        self,
        inner: MessagePublisher,
        handler: Union[EventHandler, EventCallable],
    ) -> None:
        self._inner = inner
        self._handle: EventCallable = (
            handler.handle if isinstance(handler, EventHandler) else handler
        )

    async def send(self, message: CanonicalMessage) -> Sent:
        await self._handle(message)
        return Sent()

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        return await send_batch_helper(
            self, messages, lambda publisher, message: publisher.send(message)
        )