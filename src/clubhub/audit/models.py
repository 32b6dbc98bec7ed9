from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy
from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from clubhub.db.base_model import Base


class AuditLog(Base):
    """Append-only audit event written by ``DatabaseAuditSink``."""

    __tablename__ = "AuditLog"

    id: Mapped[int] = mapped_column(sqlalchemy.Integer, primary_key=True)
    actor: Mapped[str] = mapped_column(sqlalchemy.String(64), default="system")
    action: Mapped[str] = mapped_column(sqlalchemy.String(128))
    resource_type: Mapped[str] = mapped_column(sqlalchemy.String(64))
    resource_id: Mapped[str | None] = mapped_column(sqlalchemy.String(64))
    before: Mapped[dict[str, Any] | None] = mapped_column(sqlalchemy.JSON(none_as_null=True))
    after: Mapped[dict[str, Any] | None] = mapped_column(sqlalchemy.JSON(none_as_null=True))
    reason: Mapped[str | None] = mapped_column(sqlalchemy.Text)
    created_at: Mapped[datetime] = mapped_column(
        sqlalchemy.DateTime, default=datetime.now
    )

    __table_args__ = (
        Index("ix_auditlog_resource", "resource_type", "resource_id"),
        Index("ix_auditlog_action", "action"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "actor": self.actor,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "before": self.before,
            "after": self.after,
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
