"""Wrapping consumers and publishers in the middlewares an endpoint configures."""

from __future__ import annotations

import dataclasses
import inspect
from typing import Awaitable, Callable, Optional, Union

from mq_bridge.deduplication import DeduplicationConsumer
from mq_bridge.dlq import DlqPublisher
from mq_bridge.metrics import MetricsConsumer, MetricsPublisher
from mq_bridge.models import (
    DeadLetterQueueMiddleware,
    DeduplicationMiddleware,
    Endpoint,
    MetricsMiddleware,
    RandomPanicMiddleware,
    RetryMiddleware,
)
from mq_bridge.random_panic import RandomPanicConsumer, RandomPanicPublisher
from mq_bridge.retry import RetryPublisher
from mq_bridge.traits import MessageConsumer, MessagePublisher

PublisherFactory = Callable[
    [str, Endpoint], Union[MessagePublisher, Awaitable[MessagePublisher]]
]


async def apply_middlewares_to_consumer(
    consumer: MessageConsumer, endpoint: Endpoint, route_name: str
) -> MessageConsumer:
    """Wrap `consumer` in the endpoint's middlewares.

    The list is applied in reverse, so the first configured middleware is the
    outermost layer and runs first. Publisher-only middlewares are skipped.
    """
    for middleware in reversed(endpoint.middlewares):
        if isinstance(middleware, DeduplicationMiddleware):
            consumer = DeduplicationConsumer(consumer, middleware, route_name)
        elif isinstance(middleware, MetricsMiddleware):
            consumer = MetricsConsumer(consumer, middleware, route_name, "input")
        elif isinstance(middleware, (DeadLetterQueueMiddleware, RetryMiddleware)):
            continue
        elif isinstance(middleware, RandomPanicMiddleware):
            consumer = RandomPanicConsumer(consumer, middleware)
        else:
            raise ValueError(f"[middleware:{route_name}] Unsupported consumer middleware")
    return consumer


async def apply_middlewares_to_publisher(
    publisher: MessagePublisher,
    endpoint: Endpoint,
    route_name: str,
    publisher_factory: Optional[PublisherFactory] = None,
) -> MessagePublisher:
    """Wrap `publisher` in the endpoint's middlewares, in configured order.

    `publisher_factory(route_name, endpoint)` builds the publisher a DLQ
    middleware sends to; it may be a plain or an async callable.
    """
    for middleware in endpoint.middlewares:
        if isinstance(middleware, DeadLetterQueueMiddleware):
            if publisher_factory is None:
                raise ValueError(
                    f"[middleware:{route_name}] A DLQ middleware needs a publisher factory"
                )
            dlq_publisher = publisher_factory(route_name, middleware.endpoint)
            if inspect.isawaitable(dlq_publisher):
                dlq_publisher = await dlq_publisher
            publisher = DlqPublisher(publisher, middleware, route_name, dlq_publisher)
        elif isinstance(middleware, MetricsMiddleware):
            publisher = MetricsPublisher(publisher, middleware, route_name, "output")
        elif isinstance(middleware, DeduplicationMiddleware):
            continue
        elif isinstance(middleware, RetryMiddleware):
            publisher = RetryPublisher(publisher, dataclasses.replace(middleware))
        elif isinstance(middleware, RandomPanicMiddleware):
            publisher = RandomPanicPublisher(publisher, middleware)
        else:
            raise ValueError(f"[middleware:{route_name}] Unsupported publisher middleware")
    return publisher