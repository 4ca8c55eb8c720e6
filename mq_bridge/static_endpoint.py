"""Endpoints that produce or answer with fixed content."""

from __future__ import annotations

import json
import logging
from typing import Optional

from mq_bridge.outcomes import CanonicalMessage, Received, ReceivedBatch, Sent, SentBatch
from mq_bridge.traits import (
    MessageConsumer,
    MessagePublisher,
    into_batch_commit_func,
    send_batch_helper,
)

logger = logging.getLogger(__name__)


async def _no_commit(_response: Optional[CanonicalMessage]) -> None:
    return None


class StaticEndpointPublisher(MessagePublisher):
    """A sink that answers every message with the configured content as a JSON string."""

    def __init__(self, content: str) -> None:
        self.content = content

    async def send(self, message: CanonicalMessage) -> Sent:
        logger.debug("Sending static response: %s", self.content)
        payload = json.dumps(self.content, ensure_ascii=False).encode("utf-8")
        return Sent(CanonicalMessage(payload))

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        return await send_batch_helper(
            self, messages, lambda publisher, message: publisher.send(message)
        )


class StaticRequestConsumer(MessageConsumer):
    """A source that always yields a message with the configured content."""

    def __init__(self, content: str) -> None:
        self.content = content

    async def receive(self) -> Received:
        return Received(CanonicalMessage(self.content.encode("utf-8")), _no_commit)

    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        received = await self.receive()
        return ReceivedBatch([received.message], into_batch_commit_func(received.commit))