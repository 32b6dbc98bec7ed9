from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from loguru import logger
from sqla_wrapper import SQLAlchemy

from clubhub.audit.sink import SafeAudit
from clubhub.db.db import supports_row_locks
from clubhub.exceptions import MediaRejected, PermanentJobFailure, RecordNotFound, UnsupportedStorage
from clubhub.media.models import Media, StorageType
from clubhub.media.scanner import ScanEngine
from clubhub.media.storage import ObjectStorage, scratch_copy
from clubhub.queue.broker import QueueBroker
from clubhub.queue.models import JobType
from clubhub.settings.models import QueueModel, ScanModel


class MediaScanWorker:
    """Handles ``scan_media`` jobs: fetch, scan, record the verdict exactly once."""

    def __init__(
        self,
        db: SQLAlchemy,
        broker: QueueBroker,
        scanner: ScanEngine,
        settings: ScanModel,
        queue_settings: QueueModel,
        audit: SafeAudit,
        storage: ObjectStorage | None = None,
    ):
        self.db = db
        self.broker = broker
        self.scanner = scanner
        self.storage = storage
        self.settings = settings
        self.queue = queue_settings.media_queue
        self.audit = audit

    def register(self) -> None:
        self.broker.register(self.queue, JobType.SCAN_MEDIA, self.handle)
        self.broker.on_dead_letter(self.queue, self.on_dead_letter)

    @contextmanager
    def _local_path(self, storage_type: StorageType, key: str) -> Iterator[Path]:
        if storage_type == StorageType.Local:
            yield Path(key)
            return
        if self.storage is None:
            raise UnsupportedStorage(storage_type.value)
        with scratch_copy(self.storage, key, self.settings.scratch_dir) as path:
            yield path

    def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        media_id = int(payload["mediaId"])

        with self.db.Session() as session:
            media = session.get(Media, media_id)
            if media is None:
                raise RecordNotFound("Media", media_id)
            if media.is_terminal:
                logger.debug(f"Media {media_id} already {media.status.value}, skipping")
                return {"status": media.status.value, "skipped": True}
            raw_type = payload.get("storageType") or media.storage_type.value
            key = payload.get("storageKey") or media.storage_key

        try:
            storage_type = StorageType(raw_type)
        except ValueError:
            raise UnsupportedStorage(raw_type) from None

        # no transaction is held while downloading and scanning
        with self._local_path(storage_type, key) as path:
            result = self.scanner.scan(path)

        with self.db.Session() as session:
            media = session.get(Media, media_id, with_for_update=supports_row_locks(session))
            if media is None:
                raise RecordNotFound("Media", media_id)
            if media.is_terminal:
                logger.debug(f"Media {media_id} was resolved by another delivery, dropping verdict")
                return {"status": media.status.value, "skipped": True}
            if result.is_infected:
                media.mark_rejected(result.viruses)
            else:
                media.mark_scanned()
            session.commit()
            status, scan_result = media.status.value, media.scan_result

        if result.is_infected:
            logger.log("SCAN", f"Media {media_id} rejected: {scan_result}")
            self.audit.log_event(
                "media:rejected",
                "Media",
                media_id,
                after={"status": status},
                reason=f"Malware detected: {scan_result}",
            )
            if self.settings.fail_job_on_infection:
                raise MediaRejected(media_id, result.viruses)
            return {"status": status, "viruses": result.viruses}

        logger.log("SCAN", f"Media {media_id} is clean")
        self.audit.log_event("media:scanned", "Media", media_id, after={"status": status})
        return {"status": status}

    def on_dead_letter(self, failure: dict[str, Any], error: PermanentJobFailure) -> None:
        media_id = (failure.get("payload") or {}).get("mediaId")
        if media_id is None:
            return
        with self.db.Session() as session:
            media = session.get(Media, int(media_id))
            if media is not None and media.is_terminal:
                # rejected uploads already carry their own audit event
                return
        self.audit.log_event("media:scan_failed", "Media", media_id, reason=error.reason)
