"""Publisher middleware that sends undeliverable messages to a dead-letter queue."""

from __future__ import annotations

import asyncio
import logging

from mq_bridge.errors import NonRetryableError, ProcessingError, RetryableError
from mq_bridge.models import DeadLetterQueueMiddleware
from mq_bridge.outcomes import CanonicalMessage, Sent, SentBatch
from mq_bridge.traits import MessagePublisher

logger = logging.getLogger(__name__)


class DlqPublisher(MessagePublisher):
    """Forwards messages the inner publisher rejects to a DLQ publisher.

    DLQ sends are retried with exponential backoff. If they keep failing,
    a retryable error that names both failures is raised so the route can
    try again.
    """

    def __init__(
        self,
        inner: MessagePublisher,
        config: DeadLetterQueueMiddleware,
        route_name: str,
        dlq_publisher: MessagePublisher,
    ) -> None:
        logger.info(
            "DLQ Middleware enabled for route '%s' with %d retry attempts",
            route_name,
            config.dlq_retry_attempts,
        )
        self._inner = inner
        self._dlq = dlq_publisher
        self._config = config

    def _next_backoff(self, current: int) -> int:
        return min(int(current * self._config.dlq_multiplier), self._config.dlq_max_interval_ms)

    async def _send_to_dlq_with_retry(
        self, message: CanonicalMessage, primary_error: str
    ) -> None:
        attempt = 0
        backoff_ms = self._config.dlq_initial_interval_ms
        retries = self._config.dlq_retry_attempts
        while True:
            attempt += 1
            try:
                await self._dlq.send(message)
            except ProcessingError as exc:
                if attempt < retries:
                    logger.warning(
                        "DLQ send failed on attempt %d of %d: %s. Retrying in %dms...",
                        attempt, retries, exc, backoff_ms,
                    )
                    await asyncio.sleep(backoff_ms / 1000)
                    backoff_ms = self._next_backoff(backoff_ms)
                    continue
                logger.error(
                    "DLQ send failed after %d attempts: %s. Original primary send error: %s",
                    attempt, exc, primary_error,
                )
                raise RetryableError(
                    f"Primary send failed: {primary_error}. DLQ send also failed after "
                    f"{retries} retries: {exc}"
                ) from exc
            logger.debug("Message successfully sent to DLQ on attempt %d", attempt)
            return

    async def _send_batch_to_dlq_with_retry(
        self, messages: list[CanonicalMessage], primary_error: str
    ) -> None:
        attempt = 0
        backoff_ms = self._config.dlq_initial_interval_ms
        retries = self._config.dlq_retry_attempts
        to_retry = list(messages)
        while True:
            attempt += 1
            try:
                outcome = await self._dlq.send_batch(list(to_retry))
            except ProcessingError as exc:
                if attempt < retries:
                    logger.warning(
                        "DLQ bulk send failed on attempt %d of %d: %s. Retrying in %dms...",
                        attempt, retries, exc, backoff_ms,
                    )
                else:
                    logger.error(
                        "DLQ bulk send failed after %d attempts: %s. "
                        "Original primary send error: %s",
                        attempt, exc, primary_error,
                    )
                    raise RetryableError(
                        f"Primary send failed: {primary_error}. DLQ bulk send also failed "
                        f"after {retries} retries: {exc}"
                    ) from exc
            else:
                if not outcome.failed:
                    logger.debug(
                        "Batch of %d messages successfully sent to DLQ on attempt %d.",
                        len(messages), attempt,
                    )
                    return
                if attempt < retries:
                    logger.warning(
                        "DLQ bulk send partially failed on attempt %d of %d: %d of %d "
                        "messages failed. Retrying in %dms...",
                        attempt, retries, len(outcome.failed), len(to_retry), backoff_ms,
                    )
                    to_retry = list(outcome.failed)
                else:
                    logger.error(
                        "DLQ bulk send failed after %d attempts. %d messages could not be "
                        "sent to DLQ. Original primary send error: %s",
                        attempt, len(outcome.failed), primary_error,
                    )
                    raise RetryableError(
                        f"Primary send failed: {primary_error}. DLQ bulk send also failed "
                        f"after {retries} retries, with {len(outcome.failed)} messages "
                        "remaining."
                    )
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms = self._next_backoff(backoff_ms)

    async def send(self, message: CanonicalMessage) -> Sent:
        try:
            return await self._inner.send(message)
        except ProcessingError as exc:
            error_msg = str(exc)
            logger.error("Failed to send message: %s", error_msg)
            await self._send_to_dlq_with_retry(message, error_msg)
            return Sent()

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        try:
            outcome = await self._inner.send_batch(list(messages))
        except NonRetryableError as exc:
            logger.error(
                "Failed to send a batch of %d messages (complete failure). "
                "Attempting to send all to DLQ.",
                len(messages),
            )
            await self._send_batch_to_dlq_with_retry(messages, str(exc))
            return SentBatch.ack()

        if not outcome.failed:
            return outcome

        logger.error(
            "Failed to send a batch of %d messages. Attempting to send to DLQ.",
            len(outcome.failed),
        )
        error_msg = f"{len(outcome.failed)} messages failed to send"
        await self._send_batch_to_dlq_with_retry(outcome.failed, error_msg)
        return SentBatch(responses=outcome.responses, failed=[])