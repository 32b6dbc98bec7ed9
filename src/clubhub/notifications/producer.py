from __future__ import annotations

from datetime import datetime
from typing import Any

from loguru import logger
from sqla_wrapper import SQLAlchemy

from clubhub.notifications.models import Channel, Notification, retention_cutoff
from clubhub.notifications.recipients import (
    DEFERRED,
    EVERYONE,
    RecipientDirectory,
    RecipientSpec,
    parse_recipients,
    resolve_recipients,
    to_payload,
)
from clubhub.queue.broker import QueueBroker
from clubhub.queue.models import JobType
from clubhub.settings.models import NotificationsModel, QueueModel
from clubhub.utils.supervise import SupervisedExecutor


class NotificationProducer:
    """Turns a delivery request into per-recipient jobs, or a single meta job."""

    def __init__(
        self,
        db: SQLAlchemy,
        broker: QueueBroker,
        directory: RecipientDirectory,
        settings: NotificationsModel,
        queue_settings: QueueModel,
        executor: SupervisedExecutor | None = None,
    ):
        self.db = db
        self.broker = broker
        self.directory = directory
        self.settings = settings
        self.queue = queue_settings.notification_queue
        self.executor = executor

    def enqueue_notification(
        self,
        channel: Channel | str = Channel.InApp,
        title: str = "Notification",
        message: str = "",
        data: dict[str, Any] | None = None,
        recipients: RecipientSpec | Any = EVERYONE,
        created_by: str | None = None,
        delay_ms: int | None = None,
    ) -> list[Notification]:
        """
        Persist pending notifications and enqueue one job per row.

        Resolvable recipients produce one direct row per user. Anything the
        producer cannot (or should not) expand inline becomes one meta row
        whose job is expanded by the worker.

        Returns:
            The created rows, detached, with ``job_id`` set.

        Raises:
            BrokerUnavailable: a job could not be enqueued; rows already
                committed stay pending without a ``job_id``.
        """
        channel = Channel(channel)
        spec = parse_recipients(recipients)
        resolved = resolve_recipients(spec, self.directory, max_fanout=self.settings.max_producer_fanout)

        common = dict(channel=channel, title=title, message=message, data=data, created_by=created_by)
        if resolved is DEFERRED:
            rows = [Notification.meta(to_payload(spec), **common)]
        else:
            rows = [Notification.direct(user_id, **common) for user_id in resolved]

        with self.db.Session() as session:
            session.add_all(rows)
            session.commit()

            for row in rows:
                row.job_id = self.broker.enqueue(
                    self.queue,
                    JobType.SEND_NOTIFICATION,
                    {"notificationId": str(row.id)},
                    delay_ms=delay_ms,
                )
                session.commit()

            for row in rows:
                session.refresh(row)
            session.expunge_all()

        if resolved is DEFERRED:
            logger.log("NOTIFY", f"Queued meta notification {rows[0].id} for {spec}")
        else:
            logger.log("NOTIFY", f"Queued {len(rows)} {channel.value} notification(s) '{title}'")
        return rows

    def notify_best_effort(self, **kwargs: Any) -> None:
        """Fire-and-forget ``enqueue_notification`` for side effects of other operations.

        Failures are logged by the supervising executor and never reach the caller.
        """
        if self.executor is None:
            try:
                self.enqueue_notification(**kwargs)
            except Exception as e:
                logger.opt(exception=e).error(f"Best-effort notification failed: {e}")
            return
        self.executor.submit(self.enqueue_notification, label="best-effort notification", **kwargs)

    def get(self, notification_id: int) -> Notification | None:
        with self.db.Session() as session:
            row = session.get(Notification, notification_id)
            if row is not None:
                session.expunge(row)
            return row

    def purge_expired(self, retention_days: int | None = None, now: datetime | None = None) -> int:
        return purge_expired(self.db, retention_days or self.settings.retention_days, now)


def purge_expired(db: SQLAlchemy, retention_days: int, now: datetime | None = None) -> int:
    """Delete notifications older than the retention window; returns the number removed."""
    cutoff = retention_cutoff(retention_days, now)
    with db.Session() as session:
        removed = (
            session.query(Notification)
            .filter(Notification.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        session.commit()
    logger.log("NOTIFY", f"Purged {removed} notifications created before {cutoff:%Y-%m-%d}")
    return removed
