from __future__ import annotations

from loguru import logger

from clubhub.media.models import Media
from clubhub.queue.broker import QueueBroker
from clubhub.queue.models import BackoffPolicy, JobType
from clubhub.settings.models import QueueModel, ScanModel


class MediaScanProducer:
    def __init__(self, broker: QueueBroker, settings: ScanModel, queue_settings: QueueModel):
        self.broker = broker
        self.settings = settings
        self.queue = queue_settings.media_queue

    def enqueue_scan(self, media: Media, delay_ms: int | None = None) -> str:
        """Queue a malware scan for an accepted upload and return the job id."""
        job_id = self.broker.enqueue(
            self.queue,
            JobType.SCAN_MEDIA,
            {
                "mediaId": str(media.id),
                "storageType": media.storage_type.value,
                "storageKey": media.storage_key,
            },
            attempts=self.settings.attempts,
            backoff=BackoffPolicy("exponential", self.settings.backoff_delay_ms),
            delay_ms=delay_ms,
        )
        logger.log("SCAN", f"Queued scan of media {media.id} ({media.filename})")
        return job_id
