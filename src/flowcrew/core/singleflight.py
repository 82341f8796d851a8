"""Collapse concurrent identical computations into a single call."""

from __future__ import annotations

import threading
from typing import Callable, Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class _Call(Generic[V]):
    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: V | None = None
        self.error: BaseException | None = None
        self.waiters = 0


class Singleflight(Generic[K, V]):
    """Keyed in-flight deduplication.

    While a call for ``key`` is running, further callers with the same key
    block and receive its result (or its exception) instead of starting a
    second computation.  Nothing is cached: once the call finishes the key
    is released and the next caller computes afresh.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[K, _Call[V]] = {}

    def do(self, key: K, fn: Callable[[], V]) -> V:
        with self._lock:
            call = self._calls.get(key)
            if call is not None:
                call.waiters += 1
                leader = False
            else:
                call = _Call()
                self._calls[key] = call
                leader = True

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.value  # type: ignore[return-value]

        try:
            call.value = fn()
        except BaseException as exc:
            call.error = exc
            raise
        finally:
            with self._lock:
                del self._calls[key]
            call.done.set()
        return call.value

    def in_flight(self, key: K) -> bool:
        with self._lock:
            return key in self._calls

    def waiters(self, key: K) -> int:
        """Number of callers currently blocked on ``key``'s in-flight call."""
        with self._lock:
            call = self._calls.get(key)
            return call.waiters if call else 0
