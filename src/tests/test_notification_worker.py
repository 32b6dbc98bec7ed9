import pytest

from clubhub.exceptions import (
    BrokerUnavailable,
    InvalidTransition,
    PermanentJobFailure,
    RecordNotFound,
    TransportError,
)
from clubhub.notifications.models import Channel, Notification, NotificationStatus
from clubhub.notifications.producer import NotificationProducer
from clubhub.notifications.worker import NO_RECIPIENTS_ERROR, NotificationWorker
from clubhub.queue.broker import JobContext, job_context
from clubhub.queue.models import JobType


@pytest.fixture
def producer(container) -> NotificationProducer:
    return container[NotificationProducer]


@pytest.fixture
def worker(container) -> NotificationWorker:
    return container[NotificationWorker]


def _attempt(n: int, max_attempts: int = 5):
    return job_context(JobContext("job-1", JobType.SEND_NOTIFICATION, n, max_attempts))


def _reload(db, notification_id) -> Notification:
    with db.Session() as session:
        row = session.get(Notification, notification_id)
        session.expunge(row)
        return row


def test_direct_email_is_sent(producer, worker, db, email_transport):
    (row,) = producer.enqueue_notification(channel="email", title="Welcome", message="Hi", recipients="userA")

    with _attempt(1):
        result = worker.handle({"notificationId": str(row.id)})

    assert result == {"status": "sent", "attempts": 1}
    assert email_transport.sent == [("a@club.test", "Welcome", "Hi")]
    stored = _reload(db, row.id)
    assert stored.status == NotificationStatus.Sent
    assert stored.attempts == 1
    assert stored.error == ""
    assert stored.sent_at is not None


def test_in_app_delivery_targets_the_recipient(producer, worker, db):
    (row,) = producer.enqueue_notification(channel="in-app", recipients="userC")

    worker.handle({"notificationId": str(row.id)})

    assert _reload(db, row.id).status == NotificationStatus.Sent


def test_transport_failure_below_ceiling_is_retried(producer, worker, db, email_transport):
    email_transport.fail_times = 1
    (row,) = producer.enqueue_notification(channel="email", recipients="userA")

    with _attempt(1), pytest.raises(TransportError):
        worker.handle({"notificationId": str(row.id)})

    stored = _reload(db, row.id)
    assert stored.status == NotificationStatus.Pending
    assert stored.attempts == 1
    assert "smtp refused" in stored.error

    with _attempt(2):
        worker.handle({"notificationId": str(row.id)})

    stored = _reload(db, row.id)
    assert stored.status == NotificationStatus.Sent
    assert stored.attempts == 2
    assert stored.error == ""


def test_failure_at_ceiling_marks_failed_without_raising(producer, worker, db, email_transport):
    email_transport.fail_times = -1
    worker.settings.max_delivery_attempts = 2
    (row,) = producer.enqueue_notification(channel="email", recipients="userA")

    with _attempt(1), pytest.raises(TransportError):
        worker.handle({"notificationId": str(row.id)})
    with _attempt(2):
        result = worker.handle({"notificationId": str(row.id)})

    assert result["status"] == "failed"
    stored = _reload(db, row.id)
    assert stored.status == NotificationStatus.Failed
    assert stored.attempts == 2


def test_final_broker_attempt_fails_the_record(producer, worker, db, email_transport):
    email_transport.fail_times = -1
    (row,) = producer.enqueue_notification(channel="email", recipients="userA")

    with _attempt(1, max_attempts=1):
        result = worker.handle({"notificationId": str(row.id)})

    assert result == {"status": "failed", "attempts": 1}


def test_missing_contact_fails_without_retry(producer, worker, db):
    (row,) = producer.enqueue_notification(channel="sms", recipients="userB")

    result = worker.handle({"notificationId": str(row.id)})

    assert result == {"status": "failed"}
    stored = _reload(db, row.id)
    assert stored.attempts == 1
    assert stored.error == "Recipient userB has no sms address"


def test_missing_record_raises_record_not_found(worker):
    with pytest.raises(RecordNotFound):
        worker.handle({"notificationId": "999"})


def test_redelivered_terminal_job_is_a_no_op(producer, worker, db, email_transport):
    (row,) = producer.enqueue_notification(channel="email", recipients="userA")
    worker.handle({"notificationId": str(row.id)})

    result = worker.handle({"notificationId": str(row.id)})

    assert result == {"status": "sent", "skipped": True}
    assert len(email_transport.sent) == 1
    assert _reload(db, row.id).attempts == 1


def test_meta_notification_expands_into_children(producer, worker, db, stub_broker, audit_sink):
    (meta,) = producer.enqueue_notification(channel="email", title="News", recipients="all", created_by="admin")
    stub_broker.queues["notifications"].get_nowait()

    result = worker.handle({"notificationId": str(meta.id)})

    assert result == {"status": "expanded", "children": 3}
    assert stub_broker.queues["notifications"].qsize() == 3
    with db.Session() as session:
        children = session.query(Notification).filter(Notification.id != meta.id).all()
        assert sorted(c.recipient for c in children) == ["userA", "userB", "userC"]
        assert all(c.status == NotificationStatus.Pending for c in children)
        assert all(c.title == "News" and c.channel == Channel.Email for c in children)
        assert all(c.job_id for c in children)
        assert session.get(Notification, meta.id).status == NotificationStatus.Expanded

    assert audit_sink.actions() == ["notification:expanded"]
    assert audit_sink.events[0]["actor"] == "admin"


def test_meta_redelivered_after_partial_fan_out_reuses_children(producer, worker, db, stub_broker, monkeypatch):
    (meta,) = producer.enqueue_notification(channel="email", recipients="all")
    stub_broker.queues["notifications"].get_nowait()
    enqueue = worker.broker.enqueue
    calls = []

    def flaky_enqueue(*args, **kwargs):
        calls.append(args)
        if len(calls) == 2:
            raise BrokerUnavailable("connection reset")
        return enqueue(*args, **kwargs)

    monkeypatch.setattr(worker.broker, "enqueue", flaky_enqueue)

    with pytest.raises(BrokerUnavailable):
        worker.handle({"notificationId": str(meta.id)})
    assert _reload(db, meta.id).status == NotificationStatus.Pending

    result = worker.handle({"notificationId": str(meta.id)})

    assert result == {"status": "expanded", "children": 3}
    with db.Session() as session:
        children = session.query(Notification).filter(Notification.id != meta.id).all()
        assert len(children) == 3
        assert all(c.job_id for c in children)
        assert sorted(session.get(Notification, meta.id).fanout_ids) == sorted(c.id for c in children)
    assert stub_broker.queues["notifications"].qsize() == 3
    assert len(calls) == 4


def test_dead_job_fails_its_pending_notification(producer, worker, db):
    (row,) = producer.enqueue_notification(channel="email", recipients="userA")
    failure = {"queue": "notifications", "payload": {"notificationId": str(row.id)}}

    worker.on_dead_letter(failure, PermanentJobFailure("notifications", row.job_id, "directory offline"))

    stored = _reload(db, row.id)
    assert stored.status == NotificationStatus.Failed
    assert stored.error == "directory offline"

    worker.on_dead_letter(failure, PermanentJobFailure("notifications", row.job_id, "late"))
    assert _reload(db, row.id).error == "directory offline"


def test_meta_notification_without_recipients_fails(producer, worker, db, stub_broker):
    (meta,) = producer.enqueue_notification(recipients={"club": "empty"})
    stub_broker.queues["notifications"].get_nowait()

    result = worker.handle({"notificationId": str(meta.id)})

    assert result == {"status": "failed", "children": 0}
    assert stub_broker.queues["notifications"].qsize() == 0
    stored = _reload(db, meta.id)
    assert stored.error == NO_RECIPIENTS_ERROR
    with db.Session() as session:
        assert session.query(Notification).count() == 1


def test_meta_for_unknown_filter_fails_without_children(producer, worker, db, stub_broker):
    (meta,) = producer.enqueue_notification(recipients={"role": "admin"})
    stub_broker.queues["notifications"].get_nowait()

    result = worker.handle({"notificationId": str(meta.id)})

    assert result == {"status": "failed", "children": 0}
    assert _reload(db, meta.id).error == NO_RECIPIENTS_ERROR


def test_terminal_notification_cannot_change_status():
    row = Notification.direct("userA", channel=Channel.InApp, title="t", message="m")
    row.mark_sent()

    with pytest.raises(InvalidTransition):
        row.mark_failed("late failure")
    with pytest.raises(InvalidTransition):
        row.record_failure("late failure", ceiling=5)


def test_direct_notification_cannot_be_expanded():
    row = Notification.direct("userA", channel=Channel.InApp, title="t", message="m")

    with pytest.raises(InvalidTransition):
        row.mark_expanded()


def test_notification_requires_exactly_one_recipient_form():
    with pytest.raises(ValueError):
        Notification.direct("", channel=Channel.InApp, title="t", message="m")
    with pytest.raises(ValueError):
        Notification.meta({}, channel=Channel.InApp, title="t", message="m")


def test_unconfigured_channel_is_a_transport_error(producer, worker, db, transports):
    del transports.transports[Channel.Email]
    (row,) = producer.enqueue_notification(channel="email", recipients="userA")

    with _attempt(1), pytest.raises(TransportError):
        worker.handle({"notificationId": str(row.id)})
