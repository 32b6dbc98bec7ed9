from datetime import datetime, timedelta
from unittest.mock import MagicMock

import dramatiq
import pytest

from clubhub.exceptions import BrokerUnavailable
from clubhub.notifications.models import Channel, Notification, NotificationStatus
from clubhub.notifications.producer import NotificationProducer, purge_expired
from clubhub.notifications.recipients import Group


@pytest.fixture
def producer(container) -> NotificationProducer:
    return container[NotificationProducer]


def _queued(stub_broker, queue="notifications"):
    pending = stub_broker.queues[queue]
    return [dramatiq.Message.decode(pending.get_nowait()) for _ in range(pending.qsize())]


def test_direct_recipients_get_one_row_and_job_each(producer, stub_broker):
    rows = producer.enqueue_notification(
        channel=Channel.Email, title="Welcome", message="Hi", recipients=["userA", "userB"]
    )

    assert [r.recipient for r in rows] == ["userA", "userB"]
    assert all(r.status == NotificationStatus.Pending for r in rows)
    assert all(r.recipient_group is None for r in rows)
    assert all(r.job_id for r in rows)

    messages = _queued(stub_broker)
    assert {m.message_id for m in messages} == {r.job_id for r in rows}
    assert {m.args[0]["payload"]["notificationId"] for m in messages} == {str(r.id) for r in rows}


def test_job_id_is_persisted(producer, db):
    (row,) = producer.enqueue_notification(recipients="userA")

    with db.Session() as session:
        stored = session.get(Notification, row.id)
        assert stored.job_id == row.job_id


def test_everyone_becomes_a_single_meta_row(producer, stub_broker):
    rows = producer.enqueue_notification(title="Club news", recipients="all")

    assert len(rows) == 1
    meta = rows[0]
    assert meta.is_meta
    assert meta.recipient is None
    assert meta.recipient_group == {"type": "everyone"}
    assert len(_queued(stub_broker)) == 1


def test_group_over_fanout_is_deferred(producer):
    producer.settings.max_producer_fanout = 1

    rows = producer.enqueue_notification(recipients=Group("club", "chess"))

    assert len(rows) == 1
    assert rows[0].recipient_group == {"type": "group", "kind": "club", "key": "chess"}


def test_group_within_fanout_is_resolved_inline(producer):
    rows = producer.enqueue_notification(recipients={"club": "chess"})

    assert sorted(r.recipient for r in rows) == ["userA", "userB"]


def test_unknown_direct_users_are_deferred_to_the_worker(producer):
    rows = producer.enqueue_notification(recipients=["ghost"])

    assert len(rows) == 1
    assert rows[0].recipient_group == {"type": "direct", "ids": ["ghost"]}


@pytest.mark.parametrize(
    "recipients, stored",
    [
        ({"role": "admin"}, {"type": "group", "kind": "role", "key": "admin"}),
        ({"role": "admin", "active": True}, {"type": "unresolved", "description": "{'role': 'admin', 'active': True}"}),
    ],
)
def test_unrecognised_filter_becomes_one_meta_row(producer, stub_broker, recipients, stored):
    rows = producer.enqueue_notification(channel="in-app", title="Hi", recipients=recipients)

    assert len(rows) == 1
    assert rows[0].recipient_group == stored
    assert len(_queued(stub_broker)) == 1


def test_delayed_notification_goes_to_delay_queue(producer, stub_broker):
    producer.enqueue_notification(recipients="userA", delay_ms=60_000)

    assert stub_broker.queues["notifications"].qsize() == 0
    assert stub_broker.queues["notifications.DQ"].qsize() == 1


def test_broker_failure_propagates_and_leaves_row_pending(producer, db):
    producer.broker = MagicMock()
    producer.broker.enqueue.side_effect = BrokerUnavailable("down")

    with pytest.raises(BrokerUnavailable):
        producer.enqueue_notification(recipients="userA")

    with db.Session() as session:
        (row,) = session.query(Notification).all()
        assert row.status == NotificationStatus.Pending
        assert row.job_id is None


def test_notify_best_effort_swallows_failures(producer):
    producer.broker = MagicMock()
    producer.broker.enqueue.side_effect = BrokerUnavailable("down")

    producer.notify_best_effort(recipients="userA", title="Heads up")


def test_purge_expired_removes_only_old_rows(producer, db):
    now = datetime(2026, 10, 19, 12, 0)
    with db.Session() as session:
        old = Notification.direct("userA", channel=Channel.InApp, title="old", message="")
        old.created_at = now - timedelta(days=91)
        recent = Notification.direct("userA", channel=Channel.InApp, title="recent", message="")
        recent.created_at = now - timedelta(days=10)
        session.add_all([old, recent])
        session.commit()

    assert purge_expired(db, 90, now=now) == 1

    with db.Session() as session:
        assert [n.title for n in session.query(Notification).all()] == ["recent"]


def test_producer_purge_uses_configured_retention(producer, db):
    with db.Session() as session:
        row = Notification.direct("userA", channel=Channel.InApp, title="ancient", message="")
        row.created_at = datetime.now() - timedelta(days=365)
        session.add(row)
        session.commit()

    assert producer.purge_expired() == 1
