from clubhub.media.models import Media, MediaStatus, StorageType
from clubhub.media.producer import MediaScanProducer
from clubhub.media.scanner import ClamdScanner, ScanResult
from clubhub.media.worker import MediaScanWorker

__all__ = ["ClamdScanner", "Media", "MediaScanProducer", "MediaScanWorker", "MediaStatus", "ScanResult", "StorageType"]
