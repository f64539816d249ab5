"""Per-invocation memo table of package artifacts.

Each package name maps to a ``Future`` holding its artifact handle. The
first caller for a name runs the factory; concurrent callers block on the
same future and observe the same result or exception.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ArtifactMemo(Generic[T]):
    """Thread-safe memo table keyed by package name (first writer wins)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._futures: dict[str, Future[T]] = {}

    def _claim(self, name: str) -> tuple[Future[T], bool]:
        """Return the future for ``name`` and whether this caller created it."""
        with self._lock:
            existing = self._futures.get(name)
            if existing is not None:
                return existing, False
            created: Future[T] = Future()
            self._futures[name] = created
            return created, True

    def get_or_create(self, name: str, factory: Callable[[], T]) -> T:
        """Return the memoized value for ``name``, computing it at most once.

        Raises:
            Exception: Whatever the factory raised, for every caller.
        """
        future, owner = self._claim(name)
        if not owner:
            logger.debug("Waiting on in-flight artifact for %s", name)
            return future.result()

        try:
            value = factory()
        except BaseException as e:
            future.set_exception(e)
            raise
        future.set_result(value)
        return value

    def get(self, name: str) -> T | None:
        """Return the completed value for ``name``, or None if absent or failed."""
        with self._lock:
            future = self._futures.get(name)
        if future is None or not future.done() or future.exception() is not None:
            return None
        return future.result()


__all__ = ["ArtifactMemo"]
