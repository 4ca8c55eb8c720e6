"""Middleware that records message counts and processing durations."""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Mapping, Optional

from mq_bridge.models import MetricsMiddleware
from mq_bridge.outcomes import CanonicalMessage, Received, ReceivedBatch, Sent, SentBatch
from mq_bridge.traits import MessageConsumer, MessagePublisher

PROCESSED_TOTAL = "queue_messages_processed_total"
PROCESSING_DURATION = "queue_message_processing_duration_seconds"

_LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: Mapping[str, str]) -> _LabelKey:
    return tuple(sorted(labels.items()))


class MetricsRegistry:
    """Thread-safe store of counters and histograms keyed by name and labels."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[tuple[str, _LabelKey], int] = defaultdict(int)
        self._histograms: dict[tuple[str, _LabelKey], list[float]] = defaultdict(list)

    def increment(self, name: str, labels: Mapping[str, str], value: int = 1) -> None:
        with self._lock:
            self._counters[(name, _label_key(labels))] += value

    def record(self, name: str, labels: Mapping[str, str], value: float) -> None:
        with self._lock:
            self._histograms[(name, _label_key(labels))].append(value)

    def counter(self, name: str, labels: Mapping[str, str]) -> int:
        with self._lock:
            return self._counters.get((name, _label_key(labels)), 0)

    def histogram(self, name: str, labels: Mapping[str, str]) -> list[float]:
        with self._lock:
            return list(self._histograms.get((name, _label_key(labels)), []))


REGISTRY = MetricsRegistry()


class _Recorder:
    def __init__(
        self, registry: Optional[MetricsRegistry], route_name: str, direction: str
    ) -> None:
        self.registry = registry if registry is not None else REGISTRY
        self.labels = {"route": route_name, "endpoint": direction}

    def observe(self, count: int, elapsed: float) -> None:
        if count <= 0:
            return
        self.registry.increment(PROCESSED_TOTAL, self.labels, count)
        self.registry.record(PROCESSING_DURATION, self.labels, elapsed / count)


class MetricsPublisher(MessagePublisher):
    """Counts successfully sent messages and records the average send time."""

    def __init__(
        self,
        inner: MessagePublisher,
        config: MetricsMiddleware,
        route_name: str,
        endpoint_direction: str,
        registry: Optional[MetricsRegistry] = None,
    ) -> None:
        self._inner = inner
        self._recorder = _Recorder(registry, route_name, endpoint_direction)

    async def send(self, message: CanonicalMessage) -> Sent:
        start = time.perf_counter()
        result = await self._inner.send(message)
        self._recorder.observe(1, time.perf_counter() - start)
        return result

    async def send_batch(self, messages: list[CanonicalMessage]) -> SentBatch:
        total = len(messages)
        start = time.perf_counter()
        result = await self._inner.send_batch(messages)
        elapsed = time.perf_counter() - start
        self._recorder.observe(total - len(result.failed), elapsed)
        return result


class MetricsConsumer(MessageConsumer):
    """Counts received messages and records the average receive time."""

    def __init__(
        self,
        inner: MessageConsumer,
        config: MetricsMiddleware,
        route_name: str,
        endpoint_direction: str,
        registry: Optional[MetricsRegistry] = None,
    ) -> None:
        self._inner = inner
        self._recorder = _Recorder(registry, route_name, endpoint_direction)

    async def receive(self) -> Received:
        start = time.perf_counter()
        result = await self._inner.receive()
        self._recorder.observe(1, time.perf_counter() - start)
        return result

    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        start = time.perf_counter()
        batch = await self._inner.receive_batch(max_messages)
        self._recorder.observe(len(batch.messages), time.perf_counter() - start)
        return batch