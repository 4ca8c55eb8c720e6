"""Middleware that fails at random, for testing fault handling."""

from __future__ import annotations

import random
from typing import Optional

from mq_bridge.models import RandomPanicMiddleware
from mq_bridge.outcomes import CanonicalMessage, Received, ReceivedBatch, Sent, SentBatch
from mq_bridge.traits import MessageConsumer, MessagePublisher


class RandomPanic(RuntimeError):
    """Raised when the random fault is triggered."""


def _checked_probability(config: RandomPanicMiddleware) -> float:
    if not 0.0 <= config.probability <= 1.0:
        raise ValueError(
            "RandomPanicMiddleware: probability must be between 0.0 and 1.0, "
            f"got {config.probability}"
        )
    return config.probability


class _Trigger:
    def __init__(self, probability: float, rng: Optional[random.Random], what: str) -> None:
        self.probability = probability
        self._rng = rng if rng is not None else random.Random()
        self._what = what

    def maybe_panic(self) -> None:
        if self._rng.random() < self.probability:
            raise RandomPanic(f"RandomPanicMiddleware: {self._what} panic triggered!")


class RandomPanicConsumer(MessageConsumer):
    """Raises `RandomPanic` before a receive with the configured probability."""

    def __init__(
        self,
        inner: MessageConsumer,
        config: RandomPanicMiddleware,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._inner = inner
        self._trigger = _Trigger(_checked_probability(config), rng, "Consumer")

    @property
    def probability(self) -> float:
        return self._trigger.probability

    async def receive(self) -> Received:
        self._trigger.maybe_panic()
        return await self._inner.receive()

    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        self._trigger.maybe_panic()
        return await self._inner.receive_batch(max_messages)


class RandomPanicPublisher(MessagePublisher):
    """Raises `RandomPanic` before a send with the configured probability."""

    def __init__(
        self,
        inner: MessagePublisher,
        config: RandomPanicMiddleware,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._inner = inner
        self._trigger = _Trigger(_checked_probability(config), rng, "Publisher")

    @property
    def probability(self) -> float:
        return self._trigger.probability

    async def send(self, message: CanonicalMessage) -> Sent:
        self._trigger.maybe_panic()
        return await self._inner.send(message)

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        self._trigger.maybe_panic()
        return await self._inner.send_batch(messages)