"""Shared in-memory state that survives concurrent readers during a reload.

New state is always built off to the side and published with a single
reference swap, so a reader sees either the whole old object or the whole new
one. Readers that need the object to stay valid for a while (for example
across several queries) use :meth:`SharedState.read`; the old object is only
disposed once those readers have left, or after a bounded wait.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generic, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

T = TypeVar("T")

DEFAULT_DRAIN_TIMEOUT = 5.0

__all__ = ["SharedState"]


def _default_disposer(state: Any) -> None:
    close = getattr(state, "close", None)
    if callable(close):
        close()


class SharedState(Generic[T]):
    """Hold one published state object with many readers and one writer.

    Attributes:
        disposer (Callable[[T], None]): Releases a retired state object. Defaults
            to calling its ``close()`` method when it has one.
        drain_timeout (float): Upper bound on waiting for readers of a retired
            state before it is disposed anyway.
    """

    def __init__(
        self,
        initial: Optional[T] = None,
        disposer: Optional[Callable[[T], None]] = None,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
    ) -> None:
        self.disposer = disposer or _default_disposer
        self.drain_timeout = drain_timeout
        self._condition = threading.Condition()
        self._state: Optional[T] = initial
        self._generation = 0 if initial is None else 1
        self._readers: Dict[int, int] = {}
        self._write_lock = threading.Lock()

    @property
    def current(self) -> Optional[T]:
        """The published state, or None if nothing is loaded."""
        return self._state

    @property
    def generation(self) -> int:
        """Incremented on every publish."""
        return self._generation

    @property
    def is_loaded(self) -> bool:
        return self._state is not None

    @contextmanager
    def read(self) -> Iterator[Optional[T]]:
        """Pin the current state for the duration of the ``with`` block."""
        with self._condition:
            generation = self._generation
            state = self._state
            self._readers[generation] = self._readers.get(generation, 0) + 1
        try:
            yield state
        finally:
            with self._condition:
                remaining = self._readers.get(generation, 1) - 1
                if remaining <= 0:
                    self._readers.pop(generation, None)
                else:
                    self._readers[generation] = remaining
                self._condition.notify_all()

    def publish(self, new_state: Optional[T]) -> Optional[T]:
        """Atomically replace the state and dispose the retired one.

        Args:
            new_state (Optional[T]): Fully constructed replacement, or None to unload.

        Returns:
            Optional[T]: The retired state (already disposed).
        """
        with self._write_lock:
            with self._condition:
                old_state = self._state
                old_generation = self._generation
                self._state = new_state
                self._generation += 1
            if old_state is not None:
                self._drain(old_generation)
                self._dispose(old_state)
            return old_state

    def clear(self) -> Optional[T]:
        """Unload the current state."""
        return self.publish(None)

    def _drain(self, generation: int) -> None:
        deadline = time.monotonic() + self.drain_timeout
        with self._condition:
            while self._readers.get(generation, 0) > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(
                        f"{self._readers[generation]} reader(s) still hold retired state "
                        f"(generation {generation}); disposing anyway"
                    )
                    return
                self._condition.wait(remaining)

    def _dispose(self, state: T) -> None:
        try:
            self.disposer(state)
        except Exception:
            logger.error("Failed to dispose retired state", exc_info=True)

    def __repr__(self) -> str:
        return f"<SharedState generation={self._generation} loaded={self.is_loaded}>"
