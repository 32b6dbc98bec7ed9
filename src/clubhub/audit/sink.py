"""
Audit sinks.

Workers only ever talk to ``SafeAudit``: an audit write that fails is logged
and dropped, it never fails the job that emitted it.
"""

from __future__ import annotations

from typing import Any, Protocol

from loguru import logger
from sqla_wrapper import SQLAlchemy

from clubhub.audit.models import AuditLog
from clubhub.utils.supervise import SupervisedExecutor

SYSTEM_ACTOR = "system"


class AuditSink(Protocol):
    def log_event(
        self,
        actor: str | None,
        action: str,
        resource_type: str,
        resource_id: str | int | None,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the log only."""

    def log_event(self, actor, action, resource_type, resource_id, before=None, after=None, reason=None):
        logger.log(
            "AUDIT",
            f"{actor or SYSTEM_ACTOR} {action} {resource_type}:{resource_id}"
            + (f" ({reason})" if reason else ""),
        )


class DatabaseAuditSink:
    """Persists audit events to the ``AuditLog`` table."""

    def __init__(self, db: SQLAlchemy):
        self.db = db

    def log_event(self, actor, action, resource_type, resource_id, before=None, after=None, reason=None):
        with self.db.Session() as session:
            session.add(
                AuditLog(
                    actor=actor or SYSTEM_ACTOR,
                    action=action,
                    resource_type=resource_type,
                    resource_id=str(resource_id) if resource_id is not None else None,
                    before=before,
                    after=after,
                    reason=reason,
                )
            )
            session.commit()
        logger.log("AUDIT", f"{actor or SYSTEM_ACTOR} {action} {resource_type}:{resource_id}")


class SafeAudit:
    """
    Best-effort wrapper around an ``AuditSink``.

    With an executor the write is detached and supervised; without one it
    runs inline under a log-and-continue guard.
    """

    def __init__(self, sink: AuditSink, executor: SupervisedExecutor | None = None):
        self.sink = sink
        self.executor = executor

    def log_event(
        self,
        action: str,
        resource_type: str,
        resource_id: str | int | None,
        *,
        actor: str | None = None,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None:
        if self.executor is not None:
            self.executor.submit(
                self.sink.log_event,
                actor or SYSTEM_ACTOR,
                action,
                resource_type,
                resource_id,
                before,
                after,
                reason,
                label=f"audit {action}",
            )
            return

        try:
            self.sink.log_event(actor or SYSTEM_ACTOR, action, resource_type, resource_id, before, after, reason)
        except Exception as e:
            logger.opt(exception=e).error(f"Audit write failed for {action} {resource_type}:{resource_id}: {e}")

    def record_dead_job(self, failure: dict[str, Any], error) -> None:
        """Dead-letter callback: one ``job:dead`` event per job that failed for good."""
        self.log_event(
            "job:dead",
            "Job",
            failure.get("job_id"),
            after={
                "queue": failure.get("queue"),
                "jobType": failure.get("job_type"),
                "attempts": failure.get("attempt_count"),
                "payload": failure.get("payload"),
            },
            reason=error.reason,
        )
