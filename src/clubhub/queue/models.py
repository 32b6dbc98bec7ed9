"""
Dramatiq message models for the ClubHub job core.

Defines job types, backoff policies and the message envelope that producers
enqueue and actors rehydrate.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Literal, Optional
from uuid import uuid4

BackoffKind = Literal["exponential", "fixed"]


class JobType(Enum):
    """Types of jobs that can be processed."""
    SEND_NOTIFICATION = "send_notification"
    SCAN_MEDIA = "scan_media"
    GENERATE_EXPORT = "generate_export"


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay between a failed attempt and the next one.

    ``exponential`` doubles ``delay_ms`` per retry (with jitter) up to the
    broker's ``max_backoff_ms``; ``fixed`` waits ``delay_ms`` every time.
    """
    kind: BackoffKind = "exponential"
    delay_ms: int = 1000

    def __post_init__(self) -> None:
        if self.kind not in ("exponential", "fixed"):
            raise ValueError(f"Unknown backoff kind: {self.kind}")
        if self.delay_ms < 0:
            raise ValueError("Backoff delay must be >= 0")

    def message_options(self, max_backoff_ms: int) -> Dict[str, int]:
        """Translate into Dramatiq ``Retries`` message options."""
        if self.kind == "fixed":
            return {"min_backoff": self.delay_ms, "max_backoff": self.delay_ms}
        return {"min_backoff": self.delay_ms, "max_backoff": max(self.delay_ms, max_backoff_ms)}


@dataclass
class JobMessage:
    """
    Canonical message structure for Dramatiq jobs.

    ``max_attempts`` counts every attempt including the first; the broker is
    told ``max_attempts - 1`` retries.
    """
    job_type: JobType
    payload: Dict[str, Any]
    job_id: str = field(default_factory=lambda: str(uuid4()))
    max_attempts: int = 5
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    created_at: Optional[str] = None
    available_at: Optional[str] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("A job needs at least one attempt")
        if self.created_at is None:
            self.created_at = datetime.now().isoformat()
        if self.available_at is None:
            self.available_at = self.created_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dict Dramatiq can serialize."""
        data = asdict(self)
        data["job_type"] = self.job_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobMessage":
        """Rehydrate from a dict passed into actors."""
        data = dict(data)
        data["job_type"] = JobType(data["job_type"])
        data["backoff"] = BackoffPolicy(**(data.get("backoff") or {}))
        return cls(**data)

    @property
    def log_message(self) -> str:
        """Human-friendly log summary."""
        ref = next(
            (f"{key}={value}" for key, value in self.payload.items() if key.endswith("Id")),
            None,
        )
        if ref:
            return f"Job {self.job_type.value} [{self.job_id}] for {ref}"
        return f"Job {self.job_type.value} [{self.job_id}]"


def create_job_message(
    job_type: JobType,
    payload: Dict[str, Any],
    *,
    max_attempts: int,
    backoff: BackoffPolicy,
    delay_ms: Optional[int] = None,
) -> JobMessage:
    """Factory used by ``QueueBroker.enqueue``."""
    created = datetime.now()
    available = created + timedelta(milliseconds=delay_ms or 0)
    return JobMessage(
        job_type=job_type,
        payload=dict(payload),
        max_attempts=max_attempts,
        backoff=backoff,
        created_at=created.isoformat(),
        available_at=available.isoformat(),
    )
