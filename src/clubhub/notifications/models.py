from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import sqlalchemy
from sqlalchemy import CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from clubhub.db.base_model import Base
from clubhub.exceptions import InvalidTransition


class NotificationStatus(str, Enum):
    """Lifecycle of a notification; everything but ``pending`` is terminal."""

    Pending = "pending"
    Sent = "sent"
    Failed = "failed"
    Expanded = "expanded"


class Channel(str, Enum):
    InApp = "in-app"
    Email = "email"
    Push = "push"
    Sms = "sms"


TERMINAL_STATUSES = frozenset(
    {NotificationStatus.Sent, NotificationStatus.Failed, NotificationStatus.Expanded}
)


class Notification(Base):
    """A single delivery (``recipient`` set) or a deferred group delivery (``recipient_group`` set).

    Group ("meta") notifications are expanded by the worker into one direct
    notification per resolved recipient and then marked ``expanded``.
    """

    __tablename__ = "Notification"

    id: Mapped[int] = mapped_column(sqlalchemy.Integer, primary_key=True)
    recipient: Mapped[str | None] = mapped_column(sqlalchemy.String(64))
    recipient_group: Mapped[dict[str, Any] | None] = mapped_column(
        sqlalchemy.JSON(none_as_null=True)
    )
    channel: Mapped[Channel] = mapped_column(
        sqlalchemy.Enum(
            Channel,
            name="notificationchannel",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        default=Channel.InApp,
    )
    title: Mapped[str] = mapped_column(sqlalchemy.String(255), default="Notification")
    message: Mapped[str] = mapped_column(sqlalchemy.Text, default="")
    data: Mapped[dict[str, Any]] = mapped_column(sqlalchemy.JSON, default=dict)
    status: Mapped[NotificationStatus] = mapped_column(
        sqlalchemy.Enum(
            NotificationStatus,
            name="notificationstatus",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        default=NotificationStatus.Pending,
    )
    attempts: Mapped[int] = mapped_column(sqlalchemy.Integer, default=0)
    error: Mapped[str] = mapped_column(sqlalchemy.Text, default="")
    sent_at: Mapped[datetime | None]
    job_id: Mapped[str | None] = mapped_column(sqlalchemy.String(64))
    # ids of the rows a meta notification fanned out into
    fanout_ids: Mapped[list[int] | None] = mapped_column(sqlalchemy.JSON(none_as_null=True))
    created_by: Mapped[str | None] = mapped_column(sqlalchemy.String(64))
    created_at: Mapped[datetime] = mapped_column(
        sqlalchemy.DateTime, default=datetime.now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sqlalchemy.DateTime, default=datetime.now, onupdate=datetime.now
    )

    __table_args__ = (
        CheckConstraint(
            "(recipient IS NULL) <> (recipient_group IS NULL)",
            name="ck_notification_recipient_xor_group",
        ),
        Index("ix_notification_recipient_status", "recipient", "status"),
        Index("ix_notification_created_at", "created_at"),
        Index("ix_notification_job_id", "job_id"),
    )

    @classmethod
    def direct(
        cls,
        recipient: str,
        *,
        channel: Channel,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> "Notification":
        if not recipient:
            raise ValueError("A direct notification needs a recipient")
        return cls(
            recipient=str(recipient),
            recipient_group=None,
            channel=channel,
            title=title,
            message=message,
            data=dict(data or {}),
            created_by=created_by,
            status=NotificationStatus.Pending,
            attempts=0,
            error="",
        )

    @classmethod
    def meta(
        cls,
        recipient_group: dict[str, Any],
        *,
        channel: Channel,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> "Notification":
        if not recipient_group:
            raise ValueError("A meta notification needs a recipient group")
        return cls(
            recipient=None,
            recipient_group=recipient_group,
            channel=channel,
            title=title,
            message=message,
            data=dict(data or {}),
            created_by=created_by,
            status=NotificationStatus.Pending,
            attempts=0,
            error="",
        )

    @property
    def is_meta(self) -> bool:
        return self.recipient is None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _leave_pending(self, status: NotificationStatus) -> None:
        if self.status != NotificationStatus.Pending:
            raise InvalidTransition(
                f"Notification {self.id} is {self.status.value}, cannot become {status.value}"
            )
        if status == NotificationStatus.Expanded and not self.is_meta:
            raise InvalidTransition(f"Notification {self.id} is direct and cannot be expanded")
        self.status = status

    def mark_sent(self) -> None:
        self._leave_pending(NotificationStatus.Sent)
        self.attempts = (self.attempts or 0) + 1
        self.error = ""
        self.sent_at = datetime.now()

    def record_failure(self, error: str, *, ceiling: int, final: bool = False) -> bool:
        """Count a failed attempt; fail the notification once ``ceiling`` is reached
        (or at once when ``final``).

        Returns True when the notification became terminal.
        """
        if self.is_terminal:
            raise InvalidTransition(f"Notification {self.id} is already {self.status.value}")
        self.attempts = (self.attempts or 0) + 1
        self.error = error
        if final or self.attempts >= ceiling:
            self._leave_pending(NotificationStatus.Failed)
            return True
        return False

    def mark_failed(self, error: str) -> None:
        self._leave_pending(NotificationStatus.Failed)
        self.attempts = (self.attempts or 0) + 1
        self.error = error

    def mark_expanded(self) -> None:
        self._leave_pending(NotificationStatus.Expanded)
        self.attempts = (self.attempts or 0) + 1
        self.error = ""
        self.sent_at = datetime.now()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dict for API responses and logs."""
        return {
            "id": self.id,
            "recipient": self.recipient,
            "recipient_group": self.recipient_group,
            "channel": self.channel.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "job_id": self.job_id,
            "fanout_ids": self.fanout_ids,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def retention_cutoff(retention_days: int, now: datetime | None = None) -> datetime:
    return (now or datetime.now()) - timedelta(days=retention_days)
