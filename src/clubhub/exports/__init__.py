from clubhub.exports.models import ExportJob, ExportStatus
from clubhub.exports.service import ExportHandle, ExportResult, ExportService, ExportSource
from clubhub.exports.worker import ExportWorker

__all__ = ["ExportHandle", "ExportJob", "ExportResult", "ExportService", "ExportSource", "ExportStatus", "ExportWorker"]
