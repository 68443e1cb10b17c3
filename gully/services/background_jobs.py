"""
Background jobs

One worker cycle runs every periodic task against a fresh session:
1. Webhook events awaiting (re)processing
2. Due notification outbox rows
3. Stale slot-lock sweep
4. Automatic payout retries

Each step is isolated: a failure is logged and rolled back and the
remaining steps still run.
"""

import logging
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from .notification_service import NotificationDispatcher
from .payment_webhook import PaymentWebhookProcessor
from .payout_service import PayoutManager
from .razorpay_client import RazorpayClient
from .slot_lock_service import SlotLockManager

logger = logging.getLogger(__name__)


def _run_step(db: Session, name: str, step: Callable[[], Dict[str, int]]) -> Dict[str, int]:
    try:
        return step()
    except Exception as e:
        db.rollback()
        logger.exception(f"Worker step '{name}' failed: {e}")
        return {"error": 1}


def run_worker_cycle(
    db: Session,
    batch_size: int = 50,
    gateway: Optional[RazorpayClient] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Dict[str, Dict[str, int]]:
    """Run one pass of all periodic jobs and return per-step counters."""

    def webhooks():
        processed, failed = PaymentWebhookProcessor(db, gateway=gateway).process_batch(limit=batch_size)
        return {"processed": processed, "failed": failed}

    def notifications():
        sent, failed = (dispatcher or NotificationDispatcher(db)).process_batch(limit=batch_size)
        return {"sent": sent, "failed": failed}

    def slot_locks():
        return {"expired": SlotLockManager(db).expire_stale_locks()}

    def payouts():
        return {"retried": len(PayoutManager(db, gateway=gateway).retry_due(limit=batch_size))}

    return {
        "webhooks": _run_step(db, "webhooks", webhooks),
        "notifications": _run_step(db, "notifications", notifications),
        "slot_locks": _run_step(db, "slot_locks", slot_locks),
        "payouts": _run_step(db, "payouts", payouts),
    }


def cycle_had_activity(results: Dict[str, Dict[str, int]]) -> bool:
    return any(any(counters.values()) for counters in results.values())
