"""
ClamAV scanning through the ``clamd`` client.

The file is streamed to the daemon with ``INSTREAM`` so the scanner does not
need access to the worker's filesystem. The client answers with
``{"stream": (status, signature)}`` where status is ``OK``, ``FOUND`` or
``ERROR``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import clamd
from loguru import logger

from clubhub.exceptions import ScannerUnavailable
from clubhub.settings.models import ScanModel


@dataclass(frozen=True)
class ScanResult:
    is_infected: bool
    viruses: list[str] = field(default_factory=list)


class ScanEngine(Protocol):
    def scan(self, path: Path) -> ScanResult: ...


class ClamdScanner:
    def __init__(self, settings: ScanModel, client: Any = None):
        if settings.clamd_socket:
            self.address = settings.clamd_socket
            self.client = client or clamd.ClamdUnixSocket(
                path=settings.clamd_socket, timeout=settings.timeout_seconds
            )
        else:
            self.address = f"{settings.clamd_host}:{settings.clamd_port}"
            self.client = client or clamd.ClamdNetworkSocket(
                host=settings.clamd_host, port=settings.clamd_port, timeout=settings.timeout_seconds
            )

    def ping(self) -> bool:
        try:
            return self.client.ping() == "PONG"
        except (clamd.ConnectionError, OSError) as e:
            logger.warning(f"clamd ping at {self.address} failed: {e}")
            return False

    def scan(self, path: Path) -> ScanResult:
        with open(path, "rb") as file:
            try:
                reply = self.client.instream(file)
            except clamd.ResponseError as e:
                raise ScannerUnavailable(f"clamd refused {path}: {e}") from e
            except OSError as e:
                # clamd.ConnectionError is an OSError, raw socket errors from the stream too
                raise ScannerUnavailable(f"clamd scan of {path} at {self.address} failed: {e}") from e
        return parse_reply(reply)


def parse_reply(reply: dict[str, tuple[str, str | None]] | None) -> ScanResult:
    """Turn an ``instream`` reply into a ``ScanResult``."""
    if not reply:
        raise ScannerUnavailable("clamd returned an empty reply")
    status, signature = next(iter(reply.values()))
    if status == "OK":
        return ScanResult(False, [])
    if status == "FOUND":
        return ScanResult(True, [signature] if signature else [])
    raise ScannerUnavailable(f"clamd returned an error: {signature or status}")
