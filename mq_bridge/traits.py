"""Interfaces for consumers, publishers and handlers, with shared helpers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from mq_bridge.errors import NonRetryableError, RetryableError
from mq_bridge.outcomes import (
    BatchCommitFunc,
    CanonicalMessage,
    CommitFunc,
    Handled,
    Received,
    ReceivedBatch,
    Sent,
    SentBatch,
)

logger = logging.getLogger(__name__)


class CommandHandler(ABC):
    """Processes a message and may return a response to publish."""

    @abstractmethod
    async def handle(self, msg: CanonicalMessage) -> Handled:
        """Handle one message."""


class EventHandler(ABC):
    """Processes a message without producing a response."""

    @abstractmethod
    async def handle(self, msg: CanonicalMessage) -> None:
        """Handle one message."""


class MessageConsumer(ABC):
    """A source of messages."""

    @abstractmethod
    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        """Receive up to `max_messages` messages."""

    async def receive(self) -> Received:
        """Receive exactly one message, skipping empty batches."""
        while True:
            batch = await self.receive_batch(1)
            if not batch.messages:
                continue
            message = batch.messages.pop()
            if batch.messages:
                logger.warning(
                    "receive_batch(1) returned %d extra messages; dropping them "
                    "(implementation bug)",
                    len(batch.messages),
                )
            return Received(message, into_commit_func(batch.commit))

    async def receive_batch_helper(self, max_messages: int) -> ReceivedBatch:
        """Build a one-message batch from `receive`."""
        received = await self.receive()

        async def commit(responses: Optional[list[CanonicalMessage]]) -> None:
            await received.commit(responses[0] if responses else None)

        return ReceivedBatch([received.message], commit)


class MessagePublisher(ABC):
    """A sink for messages."""

    @abstractmethod
    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        """Send a batch of messages."""

    async def send(self, message: CanonicalMessage) -> Sent:
        """Send one message by way of `send_batch`."""
        outcome = await self.send_batch([message])
        if outcome.failed:
            raise NonRetryableError("Failed to send single message")
        if outcome.responses:
            return Sent(outcome.responses.pop())
        return Sent()

    async def flush(self) -> None:
        """Flush pending messages; nothing to do by default."""
        return None


async def send_batch_helper(
    publisher: MessagePublisher,
    messages: list[CanonicalMessage],
    callback: Callable[[MessagePublisher, CanonicalMessage], Awaitable[Sent]],
) -> SentBatch:
    """Send messages one by one through `callback` and gather the outcome.

    A retryable error aborts the batch; non-retryable errors mark single
    messages as failed and sending continues.
    """
    responses: list[CanonicalMessage] = []
    failed: list[CanonicalMessage] = []
    for msg in messages:
        try:
            sent = await callback(publisher, msg)
        except RetryableError:
            raise
        except NonRetryableError:
            failed.append(msg)
            continue
        if sent.response is not None:
            responses.append(sent.response)

    if not failed and not responses:
        return SentBatch.ack()
    return SentBatch(responses=responses or None, failed=failed)


def into_commit_func(batch_commit: BatchCommitFunc) -> CommitFunc:
    """Adapt a batch commit function to commit a single message."""

    async def commit(response: Optional[CanonicalMessage]) -> None:
        await batch_commit(None if response is None else [response])

    return commit


def into_batch_commit_func(commit: CommitFunc) -> BatchCommitFunc:
    """Adapt a single-message commit function to take a batch of responses."""

    async def batch_commit(responses: Optional[list[CanonicalMessage]]) -> None:
        single: Optional[CanonicalMessage] = None
        if responses is not None:
            if len(responses) > 1:
                logger.warning(
                    "into_batch_commit_func called with batch of %d messages; dropping "
                    "all responses to avoid partial commit (incorrect usage)",
                    len(responses),
                )
            elif responses:
                single = responses[-1]
        await commit(single)

    return batch_commit