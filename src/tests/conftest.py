# tests/conftest.py
from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import dramatiq
import pytest
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, Callbacks, Retries, TimeLimit
from kink import Container

from clubhub.bootstrap import build_container, register_workers
from clubhub.db.db import create_database
from clubhub.exceptions import TransportError
from clubhub.media.scanner import ScanResult
from clubhub.notifications.models import Channel
from clubhub.notifications.transports import InAppTransport, TransportRegistry
from clubhub.queue.broker import QueueBroker
from clubhub.settings.models import (
    AppModel,
    DatabaseModel,
    ExportModel,
    LoggingModel,
    QueueModel,
    ScanModel,
)
from clubhub.utils.logging import setup_logger

# Setup logger for tests to ensure custom log levels are available
setup_logger("DEBUG")


class FakeDirectory:
    """In-memory user directory: ``users`` maps id -> {channel: address}."""

    def __init__(self, users: dict[str, dict[str, str]] | None = None, clubs: dict[str, list[str]] | None = None):
        self.users = users if users is not None else {}
        self.clubs = clubs if clubs is not None else {}

    def existing_user_ids(self, user_ids):
        return [u for u in user_ids if u in self.users]

    def group_members(self, kind, key):
        if kind != "club":
            return None
        return list(self.clubs.get(key, []))

    def all_user_ids(self):
        return list(self.users)

    def contact_for(self, user_id, channel):
        return self.users.get(user_id, {}).get(Channel(channel).value)


class RecordingTransport:
    """Records deliveries; fails the first ``fail_times`` calls (-1 fails forever)."""

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.calls: list[tuple[str, str, str]] = []
        self.sent: list[tuple[str, str, str]] = []

    def send(self, target, title, body, data):
        self.calls.append((target, title, body))
        if self.fail_times != 0:
            self.fail_times -= 1
            raise TransportError(f"smtp refused {target}")
        self.sent.append((target, title, body))


class FakeScanner:
    def __init__(self, viruses: list[str] | None = None, error: Exception | None = None):
        self.viruses = viruses or []
        self.error = error
        self.scanned: list[tuple[Path, bool]] = []

    def scan(self, path: Path) -> ScanResult:
        self.scanned.append((path, Path(path).exists()))
        if self.error is not None:
            raise self.error
        return ScanResult(bool(self.viruses), list(self.viruses))


class FakeStorage:
    def __init__(self, content: bytes = b"binary"):
        self.content = content
        self.downloads: list[tuple[str, Path]] = []

    def download(self, key: str, destination: Path) -> None:
        self.downloads.append((key, destination))
        Path(destination).write_bytes(self.content)


class RecordingAuditSink:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: list[dict[str, Any]] = []

    def log_event(self, actor, action, resource_type, resource_id, before=None, after=None, reason=None):
        if self.fail:
            raise RuntimeError("audit store down")
        self.events.append(
            {
                "actor": actor,
                "action": action,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "before": before,
                "after": after,
                "reason": reason,
            }
        )

    def actions(self) -> list[str]:
        return [e["action"] for e in self.events]


class ListExportSource:
    def __init__(self, resource_type: str, rows: list[dict[str, Any]]):
        self.resource_type = resource_type
        self.data = rows
        self.fail = False

    def count(self, entity_id, params):
        return len(self.data)

    def rows(self, entity_id, params):
        if self.fail:
            raise RuntimeError("source query timed out")
        return iter(self.data)


@pytest.fixture
def settings(tmp_path) -> AppModel:
    return AppModel(
        version="test",
        database=DatabaseModel(host="sqlite://"),
        queue=QueueModel(
            broker_url="stub://",
            backoff_delay_ms=1,
            max_backoff_ms=5,
            lease_timeout_ms=30_000,
        ),
        scan=ScanModel(scratch_dir=str(tmp_path / "scratch"), backoff_delay_ms=1),
        exports=ExportModel(sync_threshold=3, output_dir=tmp_path / "exports"),
        logging=LoggingModel(enabled=False),
    )


@pytest.fixture
def db(settings):
    database = create_database(settings.database.host, create_tables=True)
    yield database
    database.engine.dispose()


@pytest.fixture
def stub_broker() -> Iterator[StubBroker]:
    broker = StubBroker(middleware=[AgeLimit(), TimeLimit(), Callbacks(), Retries(max_retries=0)])
    yield broker
    broker.flush_all()
    broker.close()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory(
        users={
            "userA": {"email": "a@club.test", "sms": "+15550001"},
            "userB": {"email": "b@club.test"},
            "userC": {},
        },
        clubs={"chess": ["userA", "userB"], "empty": []},
    )


@pytest.fixture
def email_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def transports(email_transport) -> TransportRegistry:
    return TransportRegistry(
        {
            Channel.InApp: InAppTransport(),
            Channel.Email: email_transport,
            Channel.Sms: RecordingTransport(),
        }
    )


@pytest.fixture
def scanner() -> FakeScanner:
    return FakeScanner()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def export_source() -> ListExportSource:
    return ListExportSource(
        "Recruitment",
        [
            {"name": "Ada", "email": "ada@club.test"},
            {"name": "Grace", "email": "grace@club.test"},
        ],
    )


@pytest.fixture
def container(
    settings, db, stub_broker, directory, transports, scanner, storage, audit_sink, export_source
) -> Container:
    return build_container(
        settings,
        directory=directory,
        export_sources={"recruitment_applicants": export_source},
        audit_sink=audit_sink,
        scanner=scanner,
        storage=storage,
        transports=transports,
        broker=stub_broker,
        db=db,
        detach_side_effects=False,
    )


@pytest.fixture
def queue_broker(container) -> QueueBroker:
    return container[QueueBroker]


@pytest.fixture
def run_jobs(container, stub_broker):
    """Register every worker, then drain the stub broker with a real Dramatiq worker.

    Enqueue before calling: the worker is started and stopped inside.
    """
    queues = register_workers(container)

    def _run() -> None:
        worker = dramatiq.Worker(stub_broker, worker_timeout=100, worker_threads=1)
        worker.start()
        try:
            # a handler may enqueue follow-up jobs (meta fan-out), so go round twice
            for _ in range(2):
                for queue in queues:
                    stub_broker.join(queue, fail_fast=False)
                worker.join()
        finally:
            worker.stop()

    return _run
