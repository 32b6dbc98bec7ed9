from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger
from sqla_wrapper import SQLAlchemy

from clubhub.audit.sink import SafeAudit
from clubhub.exceptions import PermanentJobFailure, RecordNotFound
from clubhub.exports.models import ExportJob, ExportStatus
from clubhub.exports.service import ExportService, write_csv
from clubhub.queue.broker import QueueBroker, current_job_context
from clubhub.queue.models import JobType
from clubhub.utils import benchmark


class ExportWorker:
    """Handles ``generate_export`` jobs by streaming the source rows to a CSV file."""

    def __init__(self, db: SQLAlchemy, broker: QueueBroker, service: ExportService, audit: SafeAudit):
        self.db = db
        self.broker = broker
        self.service = service
        self.audit = audit

    @property
    def output_dir(self) -> Path:
        return Path(self.service.settings.output_dir)

    def register(self) -> None:
        self.broker.register(self.service.queue, JobType.GENERATE_EXPORT, self.handle)
        self.broker.on_dead_letter(self.service.queue, self.on_dead_letter)

    def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        export_id = int(payload["exportId"])

        with self.db.Session() as session:
            export = session.get(ExportJob, export_id)
            if export is None:
                raise RecordNotFound("ExportJob", export_id)
            if export.is_terminal:
                logger.debug(f"Export {export_id} already {export.status.value}, skipping")
                return {"status": export.status.value, "skipped": True}

            export.status = ExportStatus.Running
            session.commit()

            source = self.service.source_for(export.type)
            path = self.output_dir / f"{export.id}_{export.type}_{export.entity_id}.csv"
            try:
                with benchmark(log=lambda elapsed: logger.debug(f"Export {export_id} rendered in {elapsed}s")):
                    row_count = write_csv(source.rows(export.entity_id, export.params or {}), path)
            except Exception as e:
                export.error = str(e)
                if current_job_context().is_final_attempt:
                    export.status = ExportStatus.Failed
                    export.completed_at = datetime.now()
                session.commit()
                raise

            export.status = ExportStatus.Completed
            export.row_count = row_count
            export.result_path = str(path)
            export.error = ""
            export.completed_at = datetime.now()
            session.commit()
            result = export.to_dict()

        logger.log("EXPORT", f"Export {export_id} written to {path} ({row_count} rows)")
        self.audit.log_event(
            "export:completed",
            "ExportJob",
            export_id,
            actor=payload.get("requestedBy"),
            after={"rowCount": row_count, "resultPath": str(path)},
        )
        return result

    def on_dead_letter(self, failure: dict[str, Any], error: PermanentJobFailure) -> None:
        export_id = (failure.get("payload") or {}).get("exportId")
        if export_id is None:
            return
        with self.db.Session() as session:
            export = session.get(ExportJob, int(export_id))
            if export is not None and not export.is_terminal:
                export.status = ExportStatus.Failed
                export.error = error.reason
                export.completed_at = datetime.now()
                session.commit()
        self.audit.log_event("export:failed", "ExportJob", export_id, reason=error.reason)
