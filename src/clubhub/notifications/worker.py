from __future__ import annotations

from typing import Any

from loguru import logger
from sqla_wrapper import SQLAlchemy

from clubhub.audit.sink import SafeAudit
from clubhub.db.db import supports_row_locks
from clubhub.exceptions import PermanentJobFailure, RecordNotFound, TransportError
from clubhub.notifications.models import Channel, Notification
from clubhub.notifications.recipients import RecipientDirectory, expand_recipients, from_payload
from clubhub.notifications.transports import TransportRegistry
from clubhub.queue.broker import QueueBroker, current_job_context
from clubhub.queue.models import JobType
from clubhub.settings.models import NotificationsModel, QueueModel

NO_RECIPIENTS_ERROR = "No recipients resolved for meta notification"


class NotificationWorker:
    """Handles ``send_notification`` jobs: delivers direct rows and fans out meta rows."""

    def __init__(
        self,
        db: SQLAlchemy,
        broker: QueueBroker,
        directory: RecipientDirectory,
        transports: TransportRegistry,
        settings: NotificationsModel,
        queue_settings: QueueModel,
        audit: SafeAudit | None = None,
    ):
        self.db = db
        self.broker = broker
        self.directory = directory
        self.transports = transports
        self.settings = settings
        self.queue = queue_settings.notification_queue
        self.audit = audit

    def register(self) -> None:
        self.broker.register(self.queue, JobType.SEND_NOTIFICATION, self.handle)
        self.broker.on_dead_letter(self.queue, self.on_dead_letter)

    def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        notification_id = int(payload["notificationId"])

        with self.db.Session() as session:
            notification = session.get(
                Notification, notification_id, with_for_update=supports_row_locks(session)
            )
            if notification is None:
                raise RecordNotFound("Notification", notification_id)

            if notification.is_terminal:
                logger.debug(
                    f"Notification {notification_id} already {notification.status.value}, skipping"
                )
                return {"status": notification.status.value, "skipped": True}

            if notification.is_meta:
                return self._expand(session, notification)
            return self._deliver(session, notification)

    def _attempt_ceiling(self) -> int:
        context = current_job_context()
        if context.max_attempts is None:
            return self.settings.max_delivery_attempts
        return min(self.settings.max_delivery_attempts, context.max_attempts)

    def _target_for(self, notification: Notification) -> str | None:
        if notification.channel == Channel.InApp:
            return notification.recipient
        return self.directory.contact_for(notification.recipient, notification.channel)

    def _deliver(self, session, notification: Notification) -> dict[str, Any]:
        target = self._target_for(notification)
        if not target:
            notification.mark_failed(
                f"Recipient {notification.recipient} has no {notification.channel.value} address"
            )
            session.commit()
            logger.warning(f"Notification {notification.id} failed: {notification.error}")
            return {"status": notification.status.value}

        try:
            self.transports.send(
                notification.channel, target, notification.title, notification.message, notification.data
            )
        except TransportError as e:
            # the broker will not redeliver after its last attempt, so the record must not stay pending
            became_terminal = notification.record_failure(
                str(e),
                ceiling=self._attempt_ceiling(),
                final=current_job_context().is_final_attempt,
            )
            session.commit()

            if became_terminal:
                logger.error(
                    f"Notification {notification.id} failed after {notification.attempts} attempts: {e}"
                )
                return {"status": notification.status.value, "attempts": notification.attempts}
            raise

        notification.mark_sent()
        session.commit()
        logger.log("NOTIFY", f"Notification {notification.id} sent via {notification.channel.value}")
        return {"status": notification.status.value, "attempts": notification.attempts}

    def _expand(self, session, meta: Notification) -> dict[str, Any]:
        if meta.fanout_ids is None:
            user_ids = expand_recipients(from_payload(meta.recipient_group), self.directory)
            if not user_ids:
                meta.mark_failed(NO_RECIPIENTS_ERROR)
                session.commit()
                logger.warning(f"Meta notification {meta.id}: {NO_RECIPIENTS_ERROR}")
                return {"status": meta.status.value, "children": 0}

            children = [
                Notification.direct(
                    user_id,
                    channel=meta.channel,
                    title=meta.title,
                    message=meta.message,
                    data=meta.data,
                    created_by=meta.created_by,
                )
                for user_id in user_ids
            ]
            session.add_all(children)
            session.flush()
            # children and the marker commit together, a redelivered job resumes from the marker
            meta.fanout_ids = [child.id for child in children]
            session.commit()
        else:
            children = (
                session.query(Notification)
                .filter(Notification.id.in_(meta.fanout_ids))
                .order_by(Notification.id)
                .all()
            )
            logger.debug(f"Meta notification {meta.id} resuming fan-out of {len(children)} notifications")

        for child in children:
            if child.job_id is None:
                child.job_id = self.broker.enqueue(
                    self.queue, JobType.SEND_NOTIFICATION, {"notificationId": str(child.id)}
                )
                session.commit()
        meta.mark_expanded()
        session.commit()

        logger.log("NOTIFY", f"Meta notification {meta.id} expanded into {len(children)} notifications")
        if self.audit is not None:
            self.audit.log_event(
                "notification:expanded",
                "Notification",
                meta.id,
                actor=meta.created_by,
                after={"children": len(children)},
            )
        return {"status": meta.status.value, "children": len(children)}

    def on_dead_letter(self, failure: dict[str, Any], error: PermanentJobFailure) -> None:
        """A job the broker gave up on leaves its notification failed, never pending."""
        notification_id = (failure.get("payload") or {}).get("notificationId")
        if notification_id is None:
            return
        with self.db.Session() as session:
            notification = session.get(Notification, int(notification_id))
            if notification is None or notification.is_terminal:
                return
            notification.mark_failed(error.reason)
            session.commit()
        logger.error(f"Notification {notification_id} failed after its job died: {error.reason}")
