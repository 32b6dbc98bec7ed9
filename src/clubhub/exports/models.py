from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

import sqlalchemy
from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from clubhub.db.base_model import Base


class ExportStatus(str, Enum):
    Queued = "queued"
    Running = "running"
    Completed = "completed"
    Failed = "failed"


class ExportJob(Base):
    """Pollable status of an export generated by the export worker."""

    __tablename__ = "ExportJob"

    id: Mapped[int] = mapped_column(sqlalchemy.Integer, primary_key=True)
    job_id: Mapped[str | None] = mapped_column(sqlalchemy.String(64))
    type: Mapped[str] = mapped_column(sqlalchemy.String(64))
    entity_id: Mapped[str] = mapped_column(sqlalchemy.String(64))
    requested_by: Mapped[str | None] = mapped_column(sqlalchemy.String(64))
    params: Mapped[dict[str, Any]] = mapped_column(sqlalchemy.JSON, default=dict)
    status: Mapped[ExportStatus] = mapped_column(
        sqlalchemy.Enum(
            ExportStatus,
            name="exportstatus",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        default=ExportStatus.Queued,
    )
    row_count: Mapped[int | None]
    result_path: Mapped[str | None] = mapped_column(sqlalchemy.String(1024))
    error: Mapped[str] = mapped_column(sqlalchemy.Text, default="")
    created_at: Mapped[datetime] = mapped_column(
        sqlalchemy.DateTime, default=datetime.now
    )
    completed_at: Mapped[datetime | None]

    __table_args__ = (
        Index("ix_exportjob_status", "status"),
        Index("ix_exportjob_type_entity", "type", "entity_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExportStatus.Completed, ExportStatus.Failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "type": self.type,
            "entity_id": self.entity_id,
            "requested_by": self.requested_by,
            "status": self.status.value,
            "row_count": self.row_count,
            "result_path": self.result_path,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
