"""
Export service.

Small exports are rendered inline; anything at or above
``exports.sync_threshold`` rows becomes an ``ExportJob`` row plus a
``generate_export`` job, and the caller polls the row for the result.
"""

from __future__ import annotations

import csv
import io
import json
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Protocol

from loguru import logger
from sqla_wrapper import SQLAlchemy

from clubhub.audit.sink import SafeAudit
from clubhub.exceptions import UnknownExportType
from clubhub.exports.models import ExportJob, ExportStatus
from clubhub.queue.broker import QueueBroker
from clubhub.queue.models import JobType
from clubhub.settings.models import ExportModel, QueueModel


class ExportSource(Protocol):
    """Supplies the rows of one export type, e.g. the applicants of a recruitment."""

    resource_type: str

    def count(self, entity_id: str, params: dict[str, Any]) -> int: ...

    def rows(self, entity_id: str, params: dict[str, Any]) -> Iterable[dict[str, Any]]: ...


@dataclass
class ExportHandle:
    export_id: int
    job_id: str


@dataclass
class ExportResult:
    filename: str
    row_count: int
    content: str | None = None
    handle: ExportHandle | None = None

    @property
    def is_async(self) -> bool:
        return self.handle is not None


def _write_rows(rows: Iterable[dict[str, Any]], file: IO[str]) -> int:
    """Write ``rows`` as CSV with the union of their columns in first-seen order.

    Rows are spooled to a temporary file first so the header is known
    before the first line is written, without holding a large export in memory.
    """
    fieldnames: dict[str, None] = {}
    count = 0
    with tempfile.TemporaryFile("w+", encoding="utf-8") as spool:
        for row in rows:
            fieldnames.update(dict.fromkeys(row))
            spool.write(json.dumps(row, default=str) + "\n")
            count += 1
        if not count:
            return 0

        spool.seek(0)
        writer = csv.DictWriter(file, fieldnames=list(fieldnames), restval="", lineterminator="\n")
        writer.writeheader()
        for line in spool:
            writer.writerow(json.loads(line))
    return count


def render_csv(rows: Iterable[dict[str, Any]]) -> str:
    buffer = io.StringIO()
    _write_rows(rows, buffer)
    return buffer.getvalue()


def write_csv(rows: Iterable[dict[str, Any]], path: Path) -> int:
    """Stream rows into ``path`` and return the row count; nothing is left behind on failure."""
    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_suffix(path.suffix + ".part")
    try:
        with open(partial, "w", newline="", encoding="utf-8") as file:
            count = _write_rows(rows, file)
        partial.replace(path)
    finally:
        partial.unlink(missing_ok=True)
    return count


def export_filename(export_type: str, entity_id: str) -> str:
    return f"{export_type}_{entity_id}.csv"


class ExportService:
    def __init__(
        self,
        db: SQLAlchemy,
        broker: QueueBroker,
        sources: dict[str, ExportSource],
        settings: ExportModel,
        queue_settings: QueueModel,
        audit: SafeAudit,
    ):
        self.db = db
        self.broker = broker
        self.sources = dict(sources)
        self.settings = settings
        self.queue = queue_settings.export_queue
        self.audit = audit

    def source_for(self, export_type: str) -> ExportSource:
        try:
            return self.sources[export_type]
        except KeyError:
            raise UnknownExportType(export_type) from None

    @staticmethod
    def _params(payload: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in payload.items() if k not in ("type", "entityId", "requestedBy", "reason")}

    def request_export(self, payload: dict[str, Any]) -> ExportResult:
        """Generate inline below the threshold, otherwise queue and return a handle."""
        export_type = payload["type"]
        entity_id = str(payload["entityId"])
        source = self.source_for(export_type)
        params = self._params(payload)
        filename = export_filename(export_type, entity_id)

        total = source.count(entity_id, params)
        if total >= self.settings.sync_threshold:
            handle = self.enqueue_export_job(payload)
            self.audit.log_event(
                f"{source.resource_type.lower()}:export",
                source.resource_type,
                entity_id,
                actor=payload.get("requestedBy"),
                after={"queuedJobId": handle.job_id, "exportId": handle.export_id},
                reason=payload.get("reason") or "Export queued",
            )
            return ExportResult(filename=filename, row_count=total, handle=handle)

        content = render_csv(source.rows(entity_id, params))
        logger.log("EXPORT", f"Generated {export_type} export for {entity_id} inline ({total} rows)")
        self.audit.log_event(
            f"{source.resource_type.lower()}:export",
            source.resource_type,
            entity_id,
            actor=payload.get("requestedBy"),
            after={"count": total},
            reason=payload.get("reason") or "Export generated",
        )
        return ExportResult(filename=filename, row_count=total, content=content)

    def enqueue_export_job(self, payload: dict[str, Any]) -> ExportHandle:
        export_type = payload["type"]
        self.source_for(export_type)

        with self.db.Session() as session:
            export = ExportJob(
                type=export_type,
                entity_id=str(payload["entityId"]),
                requested_by=payload.get("requestedBy"),
                params=self._params(payload),
                status=ExportStatus.Queued,
            )
            session.add(export)
            session.commit()

            export.job_id = self.broker.enqueue(
                self.queue,
                JobType.GENERATE_EXPORT,
                {**payload, "exportId": str(export.id)},
            )
            session.commit()
            handle = ExportHandle(export_id=export.id, job_id=export.job_id)

        logger.log("EXPORT", f"Queued {export_type} export {handle.export_id} for {payload['entityId']}")
        return handle

    def get_status(self, export_id: int) -> dict[str, Any] | None:
        with self.db.Session() as session:
            export = session.get(ExportJob, export_id)
            return export.to_dict() if export else None
