from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

import sqlalchemy
from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from clubhub.db.base_model import Base
from clubhub.exceptions import InvalidTransition


class MediaStatus(str, Enum):
    Pending = "pending"
    Scanned = "scanned"
    Rejected = "rejected"


class StorageType(str, Enum):
    Local = "local"
    S3 = "s3"


class Media(Base):
    """An uploaded binary awaiting (or past) its malware scan.

    Leaves ``pending`` exactly once; there is no re-scan path.
    """

    __tablename__ = "Media"

    id: Mapped[int] = mapped_column(sqlalchemy.Integer, primary_key=True)
    filename: Mapped[str] = mapped_column(sqlalchemy.String(255))
    mimetype: Mapped[str | None] = mapped_column(sqlalchemy.String(128))
    size: Mapped[int | None] = mapped_column(sqlalchemy.BigInteger)
    storage_type: Mapped[StorageType] = mapped_column(
        sqlalchemy.Enum(
            StorageType,
            name="storagetype",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        default=StorageType.Local,
    )
    storage_key: Mapped[str] = mapped_column(sqlalchemy.String(1024))
    uploaded_by: Mapped[str | None] = mapped_column(sqlalchemy.String(64))
    status: Mapped[MediaStatus] = mapped_column(
        sqlalchemy.Enum(
            MediaStatus,
            name="mediastatus",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        default=MediaStatus.Pending,
    )
    scan_result: Mapped[str] = mapped_column(sqlalchemy.Text, default="")
    scanned_at: Mapped[datetime | None]
    created_at: Mapped[datetime] = mapped_column(
        sqlalchemy.DateTime, default=datetime.now
    )

    __table_args__ = (Index("ix_media_status", "status"),)

    @property
    def is_terminal(self) -> bool:
        return self.status != MediaStatus.Pending

    def _finish(self, status: MediaStatus, scan_result: str) -> None:
        if self.is_terminal:
            raise InvalidTransition(f"Media {self.id} is already {self.status.value}")
        self.status = status
        self.scan_result = scan_result
        self.scanned_at = datetime.now()

    def mark_scanned(self) -> None:
        self._finish(MediaStatus.Scanned, "")

    def mark_rejected(self, signatures: list[str]) -> None:
        self._finish(MediaStatus.Rejected, ", ".join(signatures))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "mimetype": self.mimetype,
            "size": self.size,
            "storage_type": self.storage_type.value,
            "storage_key": self.storage_key,
            "uploaded_by": self.uploaded_by,
            "status": self.status.value,
            "scan_result": self.scan_result,
            "scanned_at": self.scanned_at.isoformat() if self.scanned_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
