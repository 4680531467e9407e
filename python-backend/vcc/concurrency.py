"""Cancellation and blocking-call helpers shared by the pipeline stages."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, TypeVar

T = TypeVar("T")

# how often a queued call checks whether it was cancelled before starting
_QUEUE_POLL_S = 0.05


class CancellationToken:
    """Cooperative cancellation flag for one comparison run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class CallTimeout(Exception):
    """Raised by :func:`call_with_timeout` when the deadline passes."""


def call_with_timeout(executor: ThreadPoolExecutor, fn: Callable[..., T], timeout_s: float, *args, **kwargs) -> T:
    """Run a blocking call on ``executor`` and wait at most ``timeout_s`` for it.

    The deadline starts when the call begins running, so time spent queued
    behind other calls on a shared executor is not counted. An abandoned
    call keeps running in its thread and its result is discarded.
    """

    started = threading.Event()

    def run() -> T:
        started.set()
        return fn(*args, **kwargs)

    future = executor.submit(run)
    while not started.wait(_QUEUE_POLL_S):
        if future.done():
            break
    try:
        return future.result(timeout=timeout_s)
    except FutureTimeout as exc:
        raise CallTimeout(f"call exceeded {timeout_s}s") from exc
