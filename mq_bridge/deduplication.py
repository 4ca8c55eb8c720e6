"""Consumer middleware that drops messages whose id was already seen."""

from __future__ import annotations

import logging
import random
import sqlite3
import time
from pathlib import Path
from typing import Callable, Optional

from mq_bridge.errors import ConsumerConnectionError
from mq_bridge.models import DeduplicationMiddleware
from mq_bridge.outcomes import Received, ReceivedBatch
from mq_bridge.traits import MessageConsumer, into_batch_commit_func

logger = logging.getLogger(__name__)

_DB_FILE = "dedup.sqlite3"
_MASK_128 = (1 << 128) - 1
# A cleanup pass runs when a random byte falls below this value (about 2%).
_CLEANUP_THRESHOLD = 5


def _now_seconds() -> int:
    return int(time.time())


class DeduplicationConsumer(MessageConsumer):
    """Skips messages whose id is already stored, committing them unseen.

    Seen ids are kept with the time they were first seen in a database in
    the configured directory, so they survive restarts. Entries older than
    the TTL are removed now and then.
    """

    def __init__(
        self,
        inner: MessageConsumer,
        config: DeduplicationMiddleware,
        route_name: str,
        *,
        clock: Optional[Callable[[], int]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        logger.info(
            "Deduplication Middleware enabled for route '%s' with TTL %ds",
            route_name,
            config.ttl_seconds,
        )
        directory = Path(config.sled_path)
        directory.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(directory / _DB_FILE, isolation_level=None)
        self._db.execute(
            "CREATE TABLE IF NOT EXISTS seen (id BLOB PRIMARY KEY, ts INTEGER NOT NULL)"
        )
        self._inner = inner
        self.ttl_seconds = config.ttl_seconds
        self._clock = clock if clock is not None else _now_seconds
        self._rng = rng if rng is not None else random.Random()

    def _insert_if_new(self, message_id: int, now: int) -> bool:
        key = (message_id & _MASK_128).to_bytes(16, "big")
        try:
            cursor = self._db.execute(
                "INSERT OR IGNORE INTO seen (id, ts) VALUES (?, ?)", (key, now)
            )
        except sqlite3.Error as exc:
            raise ConsumerConnectionError(
                f"Failed to perform compare-and-swap in deduplication DB: {exc}"
            ) from exc
        return cursor.rowcount == 1

    def cleanup_expired(self, now: Optional[int] = None) -> int:
        """Remove entries older than the TTL; return how many were removed."""
        current = self._clock() if now is None else now
        cutoff = max(current - self.ttl_seconds, 0)
        try:
            cursor = self._db.execute("DELETE FROM seen WHERE ts < ?", (cutoff,))
        except sqlite3.Error as exc:
            logger.error("Error cleaning up deduplication DB: %s", exc)
            return 0
        removed = max(cursor.rowcount, 0)
        if removed:
            logger.debug("Removed %d expired deduplication entries", removed)
        return removed

    async def receive(self) -> Received:
        while True:
            received = await self._inner.receive()
            now = self._clock()
            if not self._insert_if_new(received.message.message_id, now):
                logger.info("Duplicate message detected and skipped")
                await received.commit(None)
                continue
            if self._rng.randrange(256) < _CLEANUP_THRESHOLD:
                self.cleanup_expired(now)
            return received

    async def receive_batch(self, max_messages: int) -> ReceivedBatch:
        """Receive a single message regardless of `max_messages`."""
        received = await self.receive()
        return ReceivedBatch([received.message], into_batch_commit_func(received.commit))

    def close(self) -> None:
        """Close the database."""
        self._db.close()

    def __enter__(self) -> "DeduplicationConsumer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()