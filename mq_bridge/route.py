"""Running a route: moving batches of messages from its input to its output."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from mq_bridge.errors import EndOfStream
from mq_bridge.models import Endpoint, Route
from mq_bridge.outcomes import BatchCommitFunc, CanonicalMessage, ReceivedBatch
from mq_bridge.traits import MessageConsumer, MessagePublisher

logger = logging.getLogger(__name__)

BATCH_SIZE = 128

ConsumerFactory = Callable[
    [str, Endpoint], Union[MessageConsumer, Awaitable[MessageConsumer]]
]
PublisherFactory = Callable[
    [str, Endpoint], Union[MessagePublisher, Awaitable[MessagePublisher]]
]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def _cancel(tasks: list[asyncio.Future]) -> None:
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


async def _next_batch(
    consumer: MessageConsumer, *events: asyncio.Event
) -> Optional[ReceivedBatch]:
    """Receive a batch, or return None as soon as one of `events` is set."""
    if any(event.is_set() for event in events):
        return None
    receive = asyncio.ensure_future(consumer.receive_batch(BATCH_SIZE))
    waiters = [asyncio.ensure_future(event.wait()) for event in events]
    try:
        await asyncio.wait([receive, *waiters], return_when=asyncio.FIRST_COMPLETED)
    finally:
        await _cancel([receive, *waiters])
    if any(event.is_set() for event in events):
        if receive.done() and not receive.cancelled():
            receive.exception()
        return None
    return receive.result()


async def _publish(
    publisher: MessagePublisher,
    messages: list[CanonicalMessage],
    commit: BatchCommitFunc,
) -> None:
    outcome = await publisher.send_batch(messages)
    await commit(outcome.responses)
    if outcome.failed:
        raise RuntimeError(
            f"Failed to send {len(outcome.failed)} messages in batch (non-retryable)."
        )


class RouteRunner:
    """Runs a route with its configured concurrency, reconnecting on failure.

    Consumers and publishers are built by the given factories, each called
    with the route name and the endpoint; they may be plain or async.
    """

    def __init__(
        self,
        name: str,
        route: Route,
        consumer_factory: ConsumerFactory,
        publisher_factory: PublisherFactory,
        *,
        reconnect_delay: float = 5.0,
    ) -> None:
        if route.concurrency < 1:
            raise ValueError("route concurrency must be at least 1")
        self.name = name
        self.route = route
        self.reconnect_delay = reconnect_delay
        self._consumer_factory = consumer_factory
        self._publisher_factory = publisher_factory
        self._shutdown: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    async def _connect(self) -> tuple[MessagePublisher, MessageConsumer]:
        publisher = await _resolve(self._publisher_factory(self.name, self.route.output))
        consumer = await _resolve(self._consumer_factory(self.name, self.route.input))
        return publisher, consumer

    async def run_until_err(self, shutdown: Optional[asyncio.Event] = None) -> bool:
        """Run until shutdown, end of stream or an error.

        Returns True when stopped by `shutdown`, False when the input reached
        its end; errors are raised so that the caller can reconnect.
        """
        stop = shutdown if shutdown is not None else asyncio.Event()
        if self.route.concurrency == 1:
            return await self._run_sequentially(stop)
        return await self._run_concurrently(stop)

    async def _run_sequentially(self, shutdown: asyncio.Event) -> bool:
        publisher, consumer = await self._connect()
        while True:
            try:
                batch = await _next_batch(consumer, shutdown)
            except EndOfStream:
                logger.info(
                    "Consumer for route '%s' reached end of stream. Shutting down.", self.name
                )
                return False
            if batch is None:
                logger.info(
                    "Shutdown signal received in sequential runner for route '%s'.", self.name
                )
                return True
            if not batch.messages:
                continue
            logger.debug("Received a batch of %d messages sequentially", len(batch.messages))
            await _publish(publisher, batch.messages, batch.commit)

    async def _run_concurrently(self, shutdown: asyncio.Event) -> bool:
        publisher, consumer = await self._connect()
        concurrency = self.route.concurrency
        work: asyncio.Queue = asyncio.Queue(maxsize=concurrency * BATCH_SIZE)
        failed = asyncio.Event()
        errors: list[Exception] = []

        async def worker(index: int) -> None:
            logger.debug("Starting worker %d", index)
            while True:
                item = await work.get()
                if item is None:
                    return
                messages, commit = item
                try:
                    await _publish(publisher, messages, commit)
                except Exception as exc:
                    logger.error("Worker failed to send message batch: %s", exc)
                    errors.append(exc)
                    failed.set()

        workers = [asyncio.ensure_future(worker(i)) for i in range(concurrency)]
        stopped = False
        try:
            while True:
                try:
                    batch = await _next_batch(consumer, failed, shutdown)
                except EndOfStream:
                    logger.info(
                        "Consumer for route '%s' reached end of stream. Shutting down.",
                        self.name,
                    )
                    break
                if failed.is_set():
                    logger.error("A worker reported a critical error. Shutting down route.")
                    raise errors[0]
                if batch is None:
                    logger.info(
                        "Shutdown signal received in concurrent runner for route '%s'.",
                        self.name,
                    )
                    stopped = True
                    break
                if not batch.messages:
                    continue
                logger.debug(
                    "Received a batch of %d messages concurrently", len(batch.messages)
                )
                await work.put((batch.messages, batch.commit))
        except BaseException:
            await _cancel(workers)
            raise

        for _ in workers:
            await work.put(None)
        await asyncio.gather(*workers)
        if errors:
            raise errors[0]
        return stopped

    async def _supervise(self, shutdown: asyncio.Event) -> None:
        while not shutdown.is_set():
            internal = asyncio.Event()
            run = asyncio.ensure_future(self.run_until_err(internal))
            waiter = asyncio.ensure_future(shutdown.wait())
            try:
                await asyncio.wait({run, waiter}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                await _cancel([run, waiter])
                raise
            if shutdown.is_set():
                logger.info("Shutdown signal received for route '%s'.", self.name)
                internal.set()
                await asyncio.gather(run, return_exceptions=True)
                return
            await _cancel([waiter])
            try:
                should_continue = run.result()
            except Exception as exc:
                logger.error(
                    "Route '%s' failed: %s. Reconnecting in %s seconds...",
                    self.name,
                    exc,
                    self.reconnect_delay,
                )
                try:
                    await asyncio.wait_for(shutdown.wait(), self.reconnect_delay)
                except asyncio.TimeoutError:
                    pass
                continue
            if not should_continue:
                logger.info("Route '%s' completed gracefully. Shutting down.", self.name)
                return

    def start(self) -> asyncio.Task:
        """Start the route in the background and return its task."""
        if self._task is not None and not self._task.done():
            raise RuntimeError(f"Route '{self.name}' is already running")
        self._shutdown = asyncio.Event()
        self._task = asyncio.ensure_future(self._supervise(self._shutdown))
        return self._task

    async def stop(self) -> None:
        """Signal a graceful shutdown and wait for the route to finish."""
        if self._task is None or self._shutdown is None:
            return
        self._shutdown.set()
        await self._task