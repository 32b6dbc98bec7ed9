"""
Dead-letter handling for jobs that fail for good.

Dramatiq nacks a message once ``Retries`` gives up on it or a ``throws``
exception rejects it; ``DeadLetterHook`` listens for that nack, logs a
structured failure payload and fans it out to per-queue callbacks (audit,
status bookkeeping).
"""
from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dramatiq.middleware import Middleware
from loguru import logger

from clubhub.exceptions import PermanentJobFailure

DeadLetterCallback = Callable[[Dict[str, Any], PermanentJobFailure], None]


def build_failure_payload(*, message, exception: Optional[BaseException]) -> Dict[str, Any]:
    """Construct a structured failure payload from a Dramatiq message and its last exception."""
    queue_name: str = getattr(message, "queue_name", "unknown")
    options: Dict[str, Any] = getattr(message, "options", {}) or {}
    args = getattr(message, "args", ()) or ()
    job_data: Optional[Dict[str, Any]] = args[0] if args and isinstance(args[0], dict) else None

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "queue": queue_name,
        "actor": getattr(message, "actor_name", "unknown"),
        "job_id": job_data.get("job_id") if job_data else getattr(message, "message_id", None),
        "job_type": job_data.get("job_type") if job_data else None,
        "payload": (job_data.get("payload") or {}) if job_data else {},
        "attempt_count": int(options.get("retries", 0)) + 1,
        "max_attempts": int(options.get("max_retries", 0)) + 1,
        "exception_type": type(exception).__name__ if exception else None,
        "exception": str(exception) if exception else "rejected",
    }


class DeadLetterHook(Middleware):
    """Observe final failures and report them once per message."""

    def __init__(self):
        self._callbacks: Dict[str, List[DeadLetterCallback]] = defaultdict(list)
        self.dead: deque[Dict[str, Any]] = deque(maxlen=100)

    def subscribe(self, queue_name: str, callback: DeadLetterCallback) -> None:
        self._callbacks[queue_name].append(callback)

    def after_nack(self, broker, message):
        exception = getattr(message, "_exception", None)
        failure = build_failure_payload(message=message, exception=exception)
        error = PermanentJobFailure(failure["queue"], failure["job_id"], failure["exception"])
        self.dead.append(failure)
        logger.error(
            f"Job {failure['job_id']} ({failure['job_type']}) on {failure['queue']} is dead after "
            f"{failure['attempt_count']}/{failure['max_attempts']} attempts: {failure['exception']}"
        )

        for callback in self._callbacks.get(failure["queue"], []):
            try:
                callback(failure, error)
            except Exception as e:
                logger.opt(exception=e).error(
                    f"Dead-letter callback {getattr(callback, '__qualname__', callback)} failed: {e}"
                )
