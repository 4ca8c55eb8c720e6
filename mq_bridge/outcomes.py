"""Messages and the outcomes of receiving, handling and sending them."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

APP_NAME = "mq-bridge"

_MASK_48 = (1 << 48) - 1
_MASK_62 = (1 << 62) - 1


def _uuid7_int() -> int:
    """A time-ordered 128-bit identifier laid out as a version 7 UUID."""
    millis = time.time_ns() // 1_000_000
    rand = int.from_bytes(os.urandom(10), "big")
    return (
        (millis & _MASK_48) << 80
        | 0x7 << 76
        | ((rand >> 62) & 0xFFF) << 64
        | 0b10 << 62
        | (rand & _MASK_62)
    )


@dataclass
class CanonicalMessage:
    """A message as it travels through a route."""

    payload: bytes
    message_id: Optional[int] = None
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.payload = bytes(self.payload)
        if self.message_id is None:
            self.message_id = _uuid7_int()


@dataclass
class Handled:
    """Outcome of a command handler; a response means it should be published."""

    response: Optional[CanonicalMessage] = None


@dataclass
class Sent:
    """Outcome of sending one message; `response` is set if one was produced."""

    response: Optional[CanonicalMessage] = None


@dataclass
class SentBatch:
    """Outcome of sending a batch of messages."""

    responses: Optional[list[CanonicalMessage]] = None
    failed: list[CanonicalMessage] = field(default_factory=list)

    @classmethod
    def ack(cls) -> "SentBatch":
        return cls()

    def is_ack(self) -> bool:
        return not self.responses and not self.failed


CommitFunc = Callable[[Optional[CanonicalMessage]], Awaitable[None]]
BatchCommitFunc = Callable[[Optional[list[CanonicalMessage]]], Awaitable[None]]


@dataclass
class Received:
    """A single received message and the function that commits it."""

    message: CanonicalMessage
    commit: CommitFunc

    def __repr__(self) -> str:
        return f"Received(message={self.message!r}, commit=<CommitFunc>)"


@dataclass
class ReceivedBatch:
    """A batch of received messages and the function that commits them."""

    messages: list[CanonicalMessage]
    commit: BatchCommitFunc

    def __repr__(self) -> str:
        return f"ReceivedBatch(messages={self.messages!r}, commit=<BatchCommitFunc>)"