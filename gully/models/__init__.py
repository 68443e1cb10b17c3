# Models package
from .user import User, UserRole
from .package import Package, PackageFor
from .tournament import Tournament, TournamentPayment
from .banner import PromotionalBanner
from .shop import Shop
from .venue import Venue
from .individual import Individual
from .booking import Booking, BookingSlot, BookingStatus, BookingPaymentStatus, BookingPattern
from .order import (
    OrderHistory,
    Payment,
    OrderType,
    OrderStatus,
    PaymentMode,
    GATEWAY_METHOD_MAP
)
from .payout import Payout, PayoutStatus, PayoutPurpose, BeneficiaryType
from .payment_webhook_event import PaymentWebhookEvent, WebhookEventStatus, WebhookEntityType
from .notification import NotificationOutbox, NotificationChannel, NotificationStatus

__all__ = [
    "User", "UserRole",
    "Package", "PackageFor",
    "Tournament", "TournamentPayment",
    "PromotionalBanner", "Shop", "Venue", "Individual",
    "Booking", "BookingSlot", "BookingStatus", "BookingPaymentStatus", "BookingPattern",
    "OrderHistory", "Payment", "OrderType", "OrderStatus", "PaymentMode",
    "GATEWAY_METHOD_MAP",
    "Payout", "PayoutStatus", "PayoutPurpose", "BeneficiaryType",
    "PaymentWebhookEvent", "WebhookEventStatus", "WebhookEntityType",
    "NotificationOutbox", "NotificationChannel", "NotificationStatus",
]
