"""Supervised fire-and-forget execution for best-effort side effects."""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Any

from loguru import logger


class SupervisedExecutor:
    """
    Thread pool whose tasks are never awaited by the caller.

    Every submitted task gets a done-callback that logs its failure, so a
    detached task can fail but never fail silently.
    """

    def __init__(self, max_workers: int = 4, name: str = "clubhub-bg"):
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._lock = Lock()
        self._pending: set[Future] = set()
        self.failures = 0

    def submit(self, fn: Callable[..., Any], *args: Any, label: str | None = None, **kwargs: Any) -> Future:
        task_label = label or getattr(fn, "__qualname__", repr(fn))
        future = self._pool.submit(fn, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._on_done(task_label, f))
        return future

    def _on_done(self, label: str, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            logger.debug(f"Background task {label} was cancelled")
            return
        exc = future.exception()
        if exc is not None:
            self.failures += 1
            logger.opt(exception=exc).error(f"Background task {label} failed: {exc}")

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
