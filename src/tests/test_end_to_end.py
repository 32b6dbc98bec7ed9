"""Producer -> broker -> worker runs over the in-memory broker and SQLite."""

import pytest

from clubhub.exports.models import ExportStatus
from clubhub.exports.service import ExportService
from clubhub.media.models import Media, MediaStatus, StorageType
from clubhub.media.producer import MediaScanProducer
from clubhub.notifications.models import Notification, NotificationStatus
from clubhub.notifications.producer import NotificationProducer
from clubhub.queue.broker import QueueBroker

pytestmark = pytest.mark.integration


def _notifications(db) -> list[Notification]:
    with db.Session() as session:
        rows = session.query(Notification).order_by(Notification.id).all()
        session.expunge_all()
        return rows


def test_welcome_email_is_delivered(container, run_jobs, db, email_transport):
    container[NotificationProducer].enqueue_notification(
        channel="email", title="Welcome", message="Welcome to the club", recipients=["userA"]
    )

    run_jobs()

    (row,) = _notifications(db)
    assert row.status == NotificationStatus.Sent
    assert row.attempts == 1
    assert row.error == ""
    assert email_transport.sent == [("a@club.test", "Welcome", "Welcome to the club")]


def test_flaky_transport_is_retried_with_backoff(container, run_jobs, db, email_transport):
    email_transport.fail_times = 2
    container[NotificationProducer].enqueue_notification(channel="email", recipients="userB")

    run_jobs()

    (row,) = _notifications(db)
    assert row.status == NotificationStatus.Sent
    assert row.attempts == 3
    assert len(email_transport.calls) == 3


def test_broken_transport_fails_at_the_attempt_ceiling(container, run_jobs, db, email_transport):
    email_transport.fail_times = -1
    container[NotificationProducer].enqueue_notification(channel="email", recipients="userA")

    run_jobs()

    (row,) = _notifications(db)
    assert row.status == NotificationStatus.Failed
    assert row.attempts == 5
    assert "smtp refused" in row.error
    assert len(email_transport.calls) == 5
    assert list(container[QueueBroker].dead_letters.dead) == []


def test_directory_outage_leaves_the_notification_failed(container, run_jobs, db, directory, audit_sink, monkeypatch):
    def contact_for(user_id, channel):
        raise ConnectionError("directory offline")

    monkeypatch.setattr(directory, "contact_for", contact_for)
    container[NotificationProducer].enqueue_notification(channel="email", recipients="userA")

    run_jobs()

    (row,) = _notifications(db)
    assert row.status == NotificationStatus.Failed
    assert row.error == "directory offline"
    assert audit_sink.actions() == ["job:dead"]


def test_meta_notification_fans_out_and_children_are_delivered(container, run_jobs, db, email_transport):
    container[NotificationProducer].enqueue_notification(channel="email", title="Tournament", recipients="all")

    run_jobs()

    meta, *children = _notifications(db)
    assert meta.status == NotificationStatus.Expanded
    assert sorted(c.recipient for c in children) == ["userA", "userB", "userC"]
    statuses = {c.recipient: c.status for c in children}
    assert statuses["userA"] == NotificationStatus.Sent
    assert statuses["userB"] == NotificationStatus.Sent
    # userC has no email address
    assert statuses["userC"] == NotificationStatus.Failed
    assert sorted(t for t, _, _ in email_transport.sent) == ["a@club.test", "b@club.test"]


def test_infected_upload_is_rejected_once(container, run_jobs, db, scanner, audit_sink):
    scanner.viruses = ["Test.Virus"]
    with db.Session() as session:
        media = Media(filename="x.pdf", storage_type=StorageType.S3, storage_key="uploads/x.pdf")
        session.add(media)
        session.commit()
        session.expunge(media)

    job_id = container[MediaScanProducer].enqueue_scan(media)
    run_jobs()

    with db.Session() as session:
        stored = session.get(Media, media.id)
        assert stored.status == MediaStatus.Rejected
        assert stored.scan_result == "Test.Virus"
    assert len(scanner.scanned) == 1
    assert audit_sink.actions() == ["media:rejected", "job:dead"]
    assert audit_sink.events[1]["resource_id"] == job_id
    (failure,) = container[QueueBroker].dead_letters.dead
    assert failure["exception_type"] == "MediaRejected"


def test_large_export_is_generated_by_the_worker(container, run_jobs, export_source):
    export_source.data.extend({"name": f"n{i}", "email": f"n{i}@club.test"} for i in range(5))
    service = container[ExportService]

    result = service.request_export({"type": "recruitment_applicants", "entityId": "rec-9"})
    run_jobs()

    status = service.get_status(result.handle.export_id)
    assert status["status"] == ExportStatus.Completed.value
    assert status["row_count"] == 7
