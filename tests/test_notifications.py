"""
Tests for the notification outbox

Tests cover:
- Enqueue per channel with the delivery delay
- Deduplication on idempotency key
- Dispatcher success, skipped channels, retry backoff and permanent failure
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from gully.models import NotificationOutbox, NotificationStatus
from gully.services.notification_service import NotificationDispatcher, NotificationService, render_email_html


def sender(enabled=True, error=None):
    mock = MagicMock()
    mock.enabled = enabled
    if error:
        mock.send.side_effect = error
    return mock


def enqueue(db, clock, user, key="order:order_1:Successful"):
    rows = NotificationService(db, clock=clock).enqueue(
        user_id=user.id,
        event_type="payment_successful",
        title="Tournament payment successful",
        body="We received Rs. 500.00",
        idempotency_key=key,
        data={"order_id": "order_1"},
    )
    db.commit()
    return rows


class TestNotificationService:
    def test_one_row_per_reachable_channel(self, db, factory, clock):
        user = factory.user()

        rows = enqueue(db, clock, user)

        assert sorted(r.channel for r in rows) == ["email", "push"]
        push = next(r for r in rows if r.channel == "push")
        assert push.recipient == "fcm-token-1"
        assert push.next_attempt_at == clock.now + timedelta(seconds=10)
        assert push.payload["subject"] == "Tournament payment successful"
        assert push.idempotency_key == "order:order_1:Successful:push"

    def test_user_without_contacts_gets_nothing(self, db, factory, clock):
        user = factory.user(email=None, fcm_token=None)

        assert enqueue(db, clock, user) == []

    def test_unknown_user_gets_nothing(self, db, clock):
        rows = NotificationService(db, clock=clock).enqueue(
            user_id="ghost", event_type="x", title="t", body="b", idempotency_key="k"
        )

        assert rows == []

    def test_same_key_enqueued_once(self, db, factory, clock):
        user = factory.user()
        enqueue(db, clock, user)

        assert enqueue(db, clock, user) == []
        assert db.query(NotificationOutbox).count() == 2


class TestNotificationDispatcher:
    def test_nothing_due_before_delay(self, db, factory, clock):
        enqueue(db, clock, factory.user())
        dispatcher = NotificationDispatcher(db, push_sender=sender(), email_sender=sender(), clock=clock)

        assert dispatcher.process_batch() == (0, 0)

    def test_delivers_due_rows(self, db, factory, clock):
        user = factory.user()
        enqueue(db, clock, user)
        push, email = sender(), sender()
        dispatcher = NotificationDispatcher(db, push_sender=push, email_sender=email, clock=clock)

        clock.advance(seconds=10)
        assert dispatcher.process_batch() == (2, 0)

        push.send.assert_called_once_with(
            "fcm-token-1", "Tournament payment successful", "We received Rs. 500.00",
            image=None, data={"order_id": "order_1"},
        )
        email.send.assert_called_once_with(
            "player@example.com", "Tournament payment successful", "We received Rs. 500.00",
            title="Tournament payment successful",
        )
        statuses = {r.status for r in db.query(NotificationOutbox).all()}
        assert statuses == {NotificationStatus.COMPLETED.value}

    def test_unconfigured_channel_skipped(self, db, factory, clock):
        enqueue(db, clock, factory.user(fcm_token=None))
        email = sender(enabled=False)
        dispatcher = NotificationDispatcher(db, push_sender=sender(), email_sender=email, clock=clock)

        clock.advance(seconds=10)
        dispatcher.process_batch()

        row = db.query(NotificationOutbox).one()
        assert row.status == NotificationStatus.SKIPPED.value
        email.send.assert_not_called()

    def test_failure_backs_off_then_gives_up(self, db, factory, clock):
        enqueue(db, clock, factory.user(email=None))
        push = sender(error=OSError("FCM unreachable"))
        dispatcher = NotificationDispatcher(db, push_sender=push, email_sender=sender(), clock=clock)
        row = db.query(NotificationOutbox).one()
        row.max_attempts = 2
        db.commit()

        clock.advance(seconds=10)
        assert dispatcher.process_batch() == (0, 1)
        db.refresh(row)
        assert row.status == NotificationStatus.RETRYING.value
        assert row.next_attempt_at == clock.now + timedelta(minutes=1)
        assert row.last_error == "FCM unreachable"

        clock.advance(minutes=1)
        dispatcher.process_batch()
        db.refresh(row)
        assert row.status == NotificationStatus.FAILED.value
        assert row.attempts == 2


@pytest.mark.parametrize("title,body", [("Payout <processed>", "Rs. 100 & more")])
def test_email_html_escapes(title, body):
    html = render_email_html(title, body)

    assert "&lt;processed&gt;" in html
    assert "&amp; more" in html
