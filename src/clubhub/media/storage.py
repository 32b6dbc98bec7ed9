"""Object storage access for media scanning."""

from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from clubhub.exceptions import StorageError
from clubhub.settings.models import StorageModel


class ObjectStorage(Protocol):
    def download(self, key: str, destination: Path) -> None: ...


class S3Storage:
    def __init__(self, settings: StorageModel, client=None):
        if not settings.bucket:
            raise ValueError("S3 storage needs a bucket")
        self.bucket = settings.bucket
        self.client = client or boto3.client(
            "s3",
            region_name=settings.region,
            endpoint_url=settings.endpoint_url or None,
            aws_access_key_id=settings.access_key_id or None,
            aws_secret_access_key=settings.secret_access_key or None,
        )

    def download(self, key: str, destination: Path) -> None:
        try:
            self.client.download_file(self.bucket, key, str(destination))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to download s3://{self.bucket}/{key}: {e}") from e


@contextmanager
def scratch_copy(storage: ObjectStorage, key: str, scratch_root: str | None = None) -> Iterator[Path]:
    """
    Download ``key`` into a fresh scratch directory and yield the local path.

    The directory and everything in it are removed when the block exits,
    whether it returns or raises.
    """
    if scratch_root:
        os.makedirs(scratch_root, exist_ok=True)
    scratch_dir = Path(tempfile.mkdtemp(prefix="media-", dir=scratch_root or None))
    local_path = scratch_dir / (os.path.basename(key) or "object")
    try:
        storage.download(key, local_path)
        yield local_path
    finally:
        shutil.rmtree(scratch_dir, ignore_errors=True)
        if scratch_dir.exists():
            logger.warning(f"Scratch directory {scratch_dir} could not be removed")
