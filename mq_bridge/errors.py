"""Error types raised while consuming, handling and publishing messages."""

from __future__ import annotations

from typing import Any


class ProcessingError(Exception):
    """Failure while handling or publishing a message."""

    _prefix = "processing error"

    def __init__(self, cause: Any) -> None:
        super().__init__(cause)
        self.cause = cause
        if isinstance(cause, BaseException):
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self._prefix}: {self.cause}"


class RetryableError(ProcessingError):
    """A transient failure; the operation should be retried."""

    _prefix = "retryable error"


class NonRetryableError(ProcessingError):
    """A permanent failure; the operation should not be retried."""

    _prefix = "non-retryable error"


class ConsumerError(Exception):
    """Failure while receiving messages."""


class ConsumerConnectionError(ConsumerError):
    """A transport-level failure that should trigger a reconnect."""

    def __init__(self, cause: Any) -> None:
        super().__init__(cause)
        self.cause = cause
        if isinstance(cause, BaseException):
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"consumer connection error: {self.cause}"


class EndOfStream(ConsumerError):
    """The consumer reached the end of its stream and shut down gracefully."""

    def __init__(self) -> None:
        super().__init__("consumer reached end of stream")

    def __str__(self) -> str:
        return "consumer reached end of stream"