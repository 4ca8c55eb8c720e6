"""Publisher middleware that retries failed sends with exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from mq_bridge.errors import NonRetryableError, ProcessingError, RetryableError
from mq_bridge.models import RetryMiddleware
from mq_bridge.outcomes import CanonicalMessage, Sent, SentBatch
from mq_bridge.traits import MessagePublisher

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPublisher(MessagePublisher):
    """Retries the inner publisher on retryable errors.

    Single sends give up at once on a non-retryable error. Batch sends retry
    any error, and resend only the messages that failed.
    """

    def __init__(self, inner: MessagePublisher, config: RetryMiddleware) -> None:
        self._inner = inner
        self._config = config

    def _next_interval(self, interval: int) -> int:
        return min(int(interval * self._config.multiplier), self._config.max_interval_ms)

    async def _retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        interval = self._config.initial_interval_ms
        while True:
            attempt += 1
            try:
                return await operation()
            except NonRetryableError:
                raise
            except RetryableError as exc:
                if attempt >= self._config.max_attempts:
                    raise
                logger.warning(
                    "Operation failed (attempt %d/%d): %s. Retrying in %dms...",
                    attempt,
                    self._config.max_attempts,
                    exc,
                    interval,
                )
            await asyncio.sleep(interval / 1000)
            interval = self._next_interval(interval)

    async def send(self, message: CanonicalMessage) -> Sent:
        return await self._retry(lambda: self._inner.send(message))

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        current = list(messages)
        all_responses: list[CanonicalMessage] = []
        attempt = 0
        interval = self._config.initial_interval_ms
        while True:
            attempt += 1
            try:
                outcome = await self._inner.send_batch(list(current))
            except ProcessingError as exc:
                if attempt >= self._config.max_attempts:
                    raise
                logger.warning(
                    "Batch send failed (attempt %d/%d): %s. Retrying...",
                    attempt,
                    self._config.max_attempts,
                    exc,
                )
            else:
                if outcome.responses:
                    all_responses.extend(outcome.responses)
                if not outcome.failed:
                    if not all_responses:
                        return SentBatch.ack()
                    return SentBatch(responses=all_responses, failed=[])
                if attempt >= self._config.max_attempts:
                    return SentBatch(responses=all_responses or None, failed=outcome.failed)
                logger.warning(
                    "Batch send partially failed (attempt %d/%d): %d messages failed. "
                    "Retrying...",
                    attempt,
                    self._config.max_attempts,
                    len(outcome.failed),
                )
                current = outcome.failed
            await asyncio.sleep(interval / 1000)
            interval = self._next_interval(interval)