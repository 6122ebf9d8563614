from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator


class LockBusyError(RuntimeError):
    pass


class ProcessingLock:
    """In-flight flag for recognition attempts.

    Only `hold()` sets the flag, and it clears it on every exit path (return,
    early exit, exception). Check-and-set happens without a suspension point, so
    two coroutines on the same event loop can never both hold it.
    """

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    @contextmanager
    def hold(self) -> Iterator[None]:
        if self._held:
            raise LockBusyError("a recognition attempt is already in progress")
        self._held = True
        try:
            yield
        finally:
            self._held = False

    def __repr__(self) -> str:
        return f"ProcessingLock(held={self._held})"
