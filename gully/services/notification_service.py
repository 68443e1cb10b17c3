"""
Notification Side Channel

Payment and payout transitions enqueue notifications into
``notification_outbox`` inside the same transaction as the transition.
The background worker delivers them after a short delay:
- push via Firebase Cloud Messaging (firebase-admin)
- email via SMTP

Delivery failures are retried with backoff and never touch payment state.
"""

import logging
import smtplib
from datetime import datetime, timedelta
from email.message import EmailMessage
from html import escape
from typing import Callable, Dict, List, Optional, Tuple

import firebase_admin
from firebase_admin import credentials, messaging
from sqlalchemy.orm import Session

from ..config import settings
from ..models.notification import NotificationOutbox, NotificationChannel, NotificationStatus
from ..models.user import User
from ..utils.clock import utcnow
from ..utils.db_helpers import get_pending_with_skip_locked

logger = logging.getLogger(__name__)


class NotificationService:
    """Writes outbox rows. Never commits; the caller's commit publishes them."""

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        delay_seconds: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.delay_seconds = settings.notification_delay_seconds if delay_seconds is None else delay_seconds

    def enqueue(
        self,
        user_id: Optional[str],
        event_type: str,
        title: str,
        body: str,
        idempotency_key: str,
        image: Optional[str] = None,
        subject: Optional[str] = None,
        data: Optional[Dict[str, str]] = None,
    ) -> List[NotificationOutbox]:
        """Queue push and email for a user on whichever channels they can receive."""
        if not user_id:
            return []

        user = self.db.get(User, user_id)
        if not user:
            logger.debug(f"No user {user_id} to notify for {event_type}")
            return []

        payload = {"title": title, "body": body, "image": image, "subject": subject or title, "data": data or {}}
        rows = []
        if user.fcm_token:
            rows.append(self._add(NotificationChannel.PUSH, user, user.fcm_token, event_type, payload, idempotency_key))
        if user.email:
            rows.append(self._add(NotificationChannel.EMAIL, user, user.email, event_type, payload, idempotency_key))
        return [row for row in rows if row is not None]

    def _add(
        self,
        channel: NotificationChannel,
        user: User,
        recipient: str,
        event_type: str,
        payload: dict,
        idempotency_key: str,
    ) -> Optional[NotificationOutbox]:
        key = f"{idempotency_key}:{channel.value}"
        existing = self.db.query(NotificationOutbox).filter(NotificationOutbox.idempotency_key == key).first()
        if existing:
            return None

        row = NotificationOutbox(
            channel=channel.value,
            event_type=event_type,
            user_id=user.id,
            recipient=recipient,
            payload=payload,
            status=NotificationStatus.PENDING.value,
            max_attempts=settings.notification_max_attempts,
            next_attempt_at=self.clock() + timedelta(seconds=self.delay_seconds),
            idempotency_key=key,
        )
        self.db.add(row)
        return row


class PushSender:
    """Firebase Cloud Messaging sender, initialised on first use."""

    def __init__(self, credentials_path: Optional[str] = None):
        self.credentials_path = credentials_path if credentials_path is not None else settings.firebase_credentials_path

    @property
    def enabled(self) -> bool:
        return bool(self.credentials_path)

    def _app(self):
        try:
            return firebase_admin.get_app()
        except ValueError:
            logger.info("Initialising Firebase Admin SDK")
            return firebase_admin.initialize_app(credentials.Certificate(self.credentials_path))

    def send(self, token: str, title: str, body: str, image: Optional[str] = None, data: Optional[dict] = None) -> str:
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body, image=image),
            data={k: str(v) for k, v in (data or {}).items()},
            token=token,
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(sound="default", channel_id="default"),
            ),
            apns=messaging.APNSConfig(payload=messaging.APNSPayload(aps=messaging.Aps(sound="default"))),
        )
        return messaging.send(message, app=self._app())


def render_email_html(title: str, body: str) -> str:
    return (
        "<html><body style=\"font-family: Arial, sans-serif;\">"
        f"<h2>{escape(title)}</h2><p>{escape(body)}</p>"
        "<p style=\"color:#888;font-size:12px\">Team Gully</p>"
        "</body></html>"
    )


class EmailSender:
    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
    ):
        self.host = host if host is not None else settings.smtp_host
        self.port = port or settings.smtp_port
        self.user = user if user is not None else settings.smtp_user
        self.password = password if password is not None else settings.smtp_password
        self.sender = sender or settings.smtp_from

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def send(self, to_email: str, subject: str, body: str, title: Optional[str] = None) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to_email
        msg.set_content(body)
        msg.add_alternative(render_email_html(title or subject, body), subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            server.starttls()
            if self.user:
                server.login(self.user, self.password)
            server.send_message(msg)


class NotificationDispatcher:
    """Delivers due outbox rows. Used by the background worker."""

    def __init__(
        self,
        db: Session,
        push_sender: Optional[PushSender] = None,
        email_sender: Optional[EmailSender] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.push_sender = push_sender or PushSender()
        self.email_sender = email_sender or EmailSender()
        self.clock = clock

    def get_pending(self, limit: int = 50) -> List[NotificationOutbox]:
        now = self.clock()
        return get_pending_with_skip_locked(
            self.db,
            NotificationOutbox,
            NotificationOutbox.status.in_([
                NotificationStatus.PENDING.value,
                NotificationStatus.RETRYING.value,
            ]) & (NotificationOutbox.next_attempt_at <= now),
            order_by=NotificationOutbox.next_attempt_at,
            limit=limit,
        )

    def process(self, row: NotificationOutbox) -> bool:
        sender = self.push_sender if row.channel == NotificationChannel.PUSH.value else self.email_sender
        if not sender.enabled:
            row.status = NotificationStatus.SKIPPED.value
            row.last_error = f"{row.channel} channel not configured"
            self.db.commit()
            return False

        row.status = NotificationStatus.PROCESSING.value
        row.attempts += 1
        payload = row.payload or {}

        try:
            if row.channel == NotificationChannel.PUSH.value:
                self.push_sender.send(
                    row.recipient,
                    payload.get("title", ""),
                    payload.get("body", ""),
                    image=payload.get("image"),
                    data=payload.get("data"),
                )
            else:
                self.email_sender.send(
                    row.recipient,
                    payload.get("subject") or payload.get("title", ""),
                    payload.get("body", ""),
                    title=payload.get("title"),
                )
        except Exception as e:
            # Provider errors vary (FirebaseError, SMTPException, OSError); all are retryable here
            logger.warning(f"Notification {row.id} via {row.channel} failed: {e}")
            self._handle_failure(row, str(e))
            self.db.commit()
            return False

        row.status = NotificationStatus.COMPLETED.value
        row.completed_at = self.clock()
        row.last_error = None
        self.db.commit()
        return True

    def _handle_failure(self, row: NotificationOutbox, error: str):
        """Exponential backoff: 1, 2, 4, 8... minutes, capped at an hour"""
        row.last_error = error[:1000]
        if row.attempts >= row.max_attempts:
            row.status = NotificationStatus.FAILED.value
            logger.error(f"Notification {row.id} permanently failed after {row.attempts} attempts")
        else:
            row.status = NotificationStatus.RETRYING.value
            delay_minutes = min(2 ** (row.attempts - 1), 60)
            row.next_attempt_at = self.clock() + timedelta(minutes=delay_minutes)

    def process_batch(self, limit: int = 50) -> Tuple[int, int]:
        sent = failed = 0
        for row in self.get_pending(limit=limit):
            if self.process(row):
                sent += 1
            else:
                failed += 1
        return sent, failed
