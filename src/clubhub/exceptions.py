"""Exceptions raised by the job core.

Handlers let ``TransientError`` subclasses propagate so the broker retries the
job with backoff. ``BusinessRejection`` subclasses are registered as the
actor's ``throws`` and fail the job at once, after the handler has written the
terminal status of the record it owns.
"""


class JobCoreError(Exception):
    """Base class for every error raised by the job core."""


class TransientError(JobCoreError):
    """Infrastructure failure that a later attempt may not hit."""


class BrokerUnavailable(TransientError):
    """The queue broker refused or could not accept a message."""


class RecordNotFound(TransientError):
    """The record a job references is not (yet) visible in the store."""

    def __init__(self, model: str, record_id):
        super().__init__(f"{model} {record_id} not found")
        self.model = model
        self.record_id = record_id


class ScannerUnavailable(TransientError):
    """The content scanning engine could not be reached or errored out."""


class StorageError(TransientError):
    """Object storage download failed."""


class TransportError(TransientError):
    """A notification channel transport failed to deliver."""


class BusinessRejection(JobCoreError):
    """Terminal, expected outcome that must not be retried."""


class MediaRejected(BusinessRejection):
    def __init__(self, media_id, signatures: list[str]):
        self.media_id = media_id
        self.signatures = list(signatures)
        super().__init__(f"Malware detected in media {media_id}: {', '.join(self.signatures)}")


class UnsupportedStorage(BusinessRejection):
    def __init__(self, storage_type):
        self.storage_type = storage_type
        super().__init__(f"Unsupported storage type: {storage_type}")


class UnknownExportType(BusinessRejection):
    def __init__(self, export_type):
        self.export_type = export_type
        super().__init__(f"No export source registered for type {export_type!r}")


class InvalidTransition(JobCoreError):
    """A record was asked to leave a terminal status."""


class PermanentJobFailure(JobCoreError):
    """A job exhausted its attempts (or was rejected) and was dead-lettered."""

    def __init__(self, queue: str, job_id: str, reason: str):
        self.queue = queue
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} on {queue} failed permanently: {reason}")
