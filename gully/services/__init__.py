# Services package
from .razorpay_client import RazorpayClient, get_razorpay_client, verify_webhook_signature
from .slot_lock_service import SlotLockManager, SlotConflict
from .order_strategies import OrderStrategy, get_strategy, ORDER_STRATEGIES
from .order_service import OrderReconciliationEngine, ReconcileResult
from .payout_service import PayoutManager, PayoutRequest, ALLOWED_TRANSITIONS
from .payment_webhook import (
    PaymentWebhookReceiver,
    PaymentWebhookProcessor,
    WebhookReceiveResult,
    WebhookProcessResult,
)
from .notification_service import NotificationService, NotificationDispatcher, PushSender, EmailSender
from .background_jobs import run_worker_cycle

__all__ = [
    "RazorpayClient", "get_razorpay_client", "verify_webhook_signature",
    "SlotLockManager", "SlotConflict",
    "OrderStrategy", "get_strategy", "ORDER_STRATEGIES",
    "OrderReconciliationEngine", "ReconcileResult",
    "PayoutManager", "PayoutRequest", "ALLOWED_TRANSITIONS",
    "PaymentWebhookReceiver", "PaymentWebhookProcessor", "WebhookReceiveResult", "WebhookProcessResult",
    "NotificationService", "NotificationDispatcher", "PushSender", "EmailSender",
    "run_worker_cycle",
]
