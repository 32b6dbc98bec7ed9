"""
Composition root.

Builds the broker, database, transports and services exactly once and
registers them in a kink ``Container``. Nothing in the job core reaches for a
module-level broker or session; everything is handed in from here.
"""

from __future__ import annotations

import importlib
import os
from collections.abc import Iterable

import dramatiq
from kink import Container
from loguru import logger
from sqla_wrapper import SQLAlchemy

from clubhub.audit.sink import AuditSink, DatabaseAuditSink, LoggingAuditSink, SafeAudit
from clubhub.db.db import create_database
from clubhub.exports.service import ExportService, ExportSource
from clubhub.exports.worker import ExportWorker
from clubhub.media.producer import MediaScanProducer
from clubhub.media.scanner import ClamdScanner, ScanEngine
from clubhub.media.storage import ObjectStorage, S3Storage
from clubhub.media.worker import MediaScanWorker
from clubhub.notifications.producer import NotificationProducer
from clubhub.notifications.recipients import RecipientDirectory
from clubhub.notifications.transports import TransportRegistry, build_transports
from clubhub.notifications.worker import NotificationWorker
from clubhub.queue.broker import QueueBroker, build_dramatiq_broker
from clubhub.settings.models import AppModel
from clubhub.utils.supervise import SupervisedExecutor


def build_container(
    settings: AppModel,
    *,
    directory: RecipientDirectory,
    export_sources: dict[str, ExportSource] | None = None,
    audit_sink: AuditSink | None = None,
    scanner: ScanEngine | None = None,
    storage: ObjectStorage | None = None,
    transports: TransportRegistry | None = None,
    broker: dramatiq.Broker | None = None,
    db: SQLAlchemy | None = None,
    detach_side_effects: bool = True,
) -> Container:
    """
    Wire the job core for ``settings``.

    The recipient directory, export sources and audit sink belong to the
    surrounding application and are passed in. Infrastructure arguments
    (``broker``, ``db``, ``scanner``...) override what would otherwise be
    built from settings; tests use them to inject fakes.
    """
    container = Container()
    container[AppModel] = settings

    executor = SupervisedExecutor() if detach_side_effects else None
    if executor is not None:
        container[SupervisedExecutor] = executor

    database = db or create_database(settings.database.host, echo=settings.database.echo)
    queue_broker = QueueBroker(broker or build_dramatiq_broker(settings.queue), settings.queue)
    audit = SafeAudit(audit_sink or LoggingAuditSink(), executor)

    if storage is None and settings.storage.bucket:
        storage = S3Storage(settings.storage)

    for queue in (settings.queue.notification_queue, settings.queue.media_queue, settings.queue.export_queue):
        queue_broker.on_dead_letter(queue, audit.record_dead_job)

    container[SQLAlchemy] = database
    container[QueueBroker] = queue_broker
    container[SafeAudit] = audit
    container[RecipientDirectory] = directory

    container[NotificationProducer] = NotificationProducer(
        database, queue_broker, directory, settings.notifications, settings.queue, executor
    )
    container[NotificationWorker] = NotificationWorker(
        database,
        queue_broker,
        directory,
        transports or build_transports(settings.notifications),
        settings.notifications,
        settings.queue,
        audit,
    )
    container[MediaScanProducer] = MediaScanProducer(queue_broker, settings.scan, settings.queue)
    container[MediaScanWorker] = MediaScanWorker(
        database,
        queue_broker,
        scanner or ClamdScanner(settings.scan),
        settings.scan,
        settings.queue,
        audit,
        storage,
    )
    export_service = ExportService(
        database, queue_broker, export_sources or {}, settings.exports, settings.queue, audit
    )
    container[ExportService] = export_service
    container[ExportWorker] = ExportWorker(database, queue_broker, export_service, audit)

    logger.log("PROGRAM", f"Job core wired (broker: {type(queue_broker.broker).__name__})")
    return container


WORKERS = {
    "notifications": NotificationWorker,
    "media": MediaScanWorker,
    "exports": ExportWorker,
}


def register_workers(container: Container, names: Iterable[str] | None = None) -> list[str]:
    """Register the handlers of the named workers (all by default); returns their queue names."""
    settings = container[AppModel]
    queue_names = {
        "notifications": settings.queue.notification_queue,
        "media": settings.queue.media_queue,
        "exports": settings.queue.export_queue,
    }
    selected = list(names) if names else list(WORKERS)
    for name in selected:
        if name not in WORKERS:
            raise ValueError(f"Unknown worker {name!r}, expected one of {', '.join(WORKERS)}")
        container[WORKERS[name]].register()
    return [queue_names[name] for name in selected]


def load_object(path: str):
    """Import ``package.module:attribute`` and return the attribute (instantiated if it is a class)."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")
    obj = getattr(importlib.import_module(module_name), attribute)
    return obj() if isinstance(obj, type) else obj


def container_from_environment(
    settings: AppModel,
    directory_path: str | None = None,
    export_sources: dict[str, str] | None = None,
    audit: str = "log",
) -> Container:
    """
    Build a container for a standalone worker process.

    The recipient directory and export sources are plugged in from import
    paths (``CLUBHUB_DIRECTORY``, ``CLUBHUB_EXPORT_SOURCES`` as
    ``type=module:attr,...``) since they live in the host application.
    """
    directory_path = directory_path or os.getenv("CLUBHUB_DIRECTORY")
    if not directory_path:
        raise ValueError("No recipient directory configured, set CLUBHUB_DIRECTORY=module:attribute")

    if export_sources is None:
        export_sources = {}
        for item in filter(None, os.getenv("CLUBHUB_EXPORT_SOURCES", "").split(",")):
            export_type, _, path = item.partition("=")
            export_sources[export_type.strip()] = path.strip()

    database = create_database(settings.database.host, echo=settings.database.echo)
    audit_sink: AuditSink = DatabaseAuditSink(database) if audit == "db" else LoggingAuditSink()
    return build_container(
        settings,
        directory=load_object(directory_path),
        export_sources={name: load_object(path) for name, path in export_sources.items()},
        audit_sink=audit_sink,
        db=database,
    )
