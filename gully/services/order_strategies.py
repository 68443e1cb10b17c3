"""
Per-kind order behaviour.

The reconciliation engine is one parameterised workflow; everything that
differs between a tournament entry, a shop subscription or a venue booking
lives in the strategy registered for its ``OrderType``:
- which row the order targets and how it is validated
- whether a package is required and whether GST is derived from the total
- what happens to the target when the payment is captured or fails
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ..models.banner import PromotionalBanner
from ..models.booking import Booking
from ..models.individual import Individual
from ..models.order import OrderHistory, OrderStatus, OrderType, Payment
from ..models.package import Package, PackageFor
from ..models.shop import Shop
from ..models.tournament import Tournament, TournamentPayment
from ..models.venue import Venue
from ..schemas.order import OrderCreateBase
from ..utils.dependencies import Principal
from ..utils.errors import AlreadyExists, Forbidden, NotFound, ValidationError
from .slot_lock_service import SlotLockManager, open_booking_order

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass
class OrderContext:
    target: Any
    package: Optional[Package] = None


def extend_subscription(current_expiry: Optional[datetime], duration_days: int, now: datetime) -> Tuple[datetime, datetime]:
    """Renewals stack on an unexpired subscription; lapsed ones restart today."""
    start = current_expiry if current_expiry and current_expiry > now else now
    return start, start + timedelta(days=duration_days or 0)


class OrderStrategy:
    order_type: OrderType
    model: Any = None
    label = "Order"
    requires_package = False
    package_for: Optional[PackageFor] = None
    derive_gst = False

    @property
    def created_message(self) -> str:
        return f"{self.label} order created successfully"

    def validate(self, db: Session, principal: Principal, request: OrderCreateBase, now: datetime) -> OrderContext:
        target = db.get(self.model, request.target_id())
        if not target:
            raise NotFound(f"{self.label} not found")

        if self.requires_package and not request.package_id:
            raise ValidationError("package_id is required")

        package = None
        if request.package_id:
            package = db.get(Package, request.package_id)
            if not package or not package.is_active:
                raise NotFound("Package not found")
            if self.package_for and package.package_for != self.package_for.value:
                raise ValidationError(f"Package is not a {self.package_for.value} package")
        return OrderContext(target=target, package=package)

    def load_target(self, db: Session, history: OrderHistory):
        target = db.get(self.model, history.target_id)
        if not target:
            logger.error(
                f"{self.label} {history.target_id} for order {history.order_id} no longer exists; "
                f"side effect skipped"
            )
        return target

    def load_package(self, db: Session, history: OrderHistory) -> Optional[Package]:
        return db.get(Package, history.package_id) if history.package_id else None

    def on_order_created(self, db: Session, history: OrderHistory, context: OrderContext) -> None:
        pass

    def on_captured(self, db: Session, history: OrderHistory, payment: Payment, clock: Clock) -> None:
        pass

    def on_failed(self, db: Session, history: OrderHistory, payment: Payment, clock: Clock) -> None:
        pass


class TournamentOrderStrategy(OrderStrategy):
    order_type = OrderType.TOURNAMENT
    model = Tournament
    label = "Tournament"

    def on_captured(self, db, history, payment, clock):
        tournament = self.load_target(db, history)
        if not tournament:
            return
        tournament.is_active = True
        already_linked = db.query(TournamentPayment).filter(
            TournamentPayment.tournament_id == tournament.id,
            TournamentPayment.payment_id == payment.id,
        ).first()
        if not already_linked:
            db.add(TournamentPayment(
                tournament_id=tournament.id,
                payment_id=payment.id,
                amount=payment.amount_paid,
            ))


class SponsorOrderStrategy(OrderStrategy):
    order_type = OrderType.SPONSOR
    model = Tournament
    label = "Sponsorship"
    requires_package = True
    package_for = PackageFor.SPONSOR
    derive_gst = True

    def on_captured(self, db, history, payment, clock):
        tournament = self.load_target(db, history)
        if not tournament:
            return
        tournament.is_sponsored = True
        tournament.sponsor_package_id = history.package_id


class BannerOrderStrategy(OrderStrategy):
    order_type = OrderType.BANNER
    model = PromotionalBanner
    label = "Banner"
    derive_gst = True

    def on_captured(self, db, history, payment, clock):
        banner = self.load_target(db, history)
        if not banner:
            return
        banner.is_active = True
        banner.activated_at = clock()


class ShopOrderStrategy(OrderStrategy):
    order_type = OrderType.SHOP
    model = Shop
    label = "Shop subscription"
    requires_package = True
    package_for = PackageFor.SHOP
    derive_gst = True

    def on_captured(self, db, history, payment, clock):
        shop = self.load_target(db, history)
        package = self.load_package(db, history)
        if not shop or not package:
            return
        now = clock()
        renewing = shop.is_subscription_purchased and shop.package_end_date and shop.package_end_date > now
        _, end = extend_subscription(shop.package_end_date if renewing else None, package.duration_days, now)
        if not renewing:
            shop.package_start_date = now
        shop.package_end_date = end
        shop.package_id = package.id
        shop.is_subscription_purchased = True


class VenueOrderStrategy(OrderStrategy):
    order_type = OrderType.VENUE
    model = Venue
    label = "Venue subscription"
    requires_package = True
    package_for = PackageFor.VENUE

    def on_captured(self, db, history, payment, clock):
        venue = self.load_target(db, history)
        package = self.load_package(db, history)
        if not venue or not package:
            return
        _, venue.subscription_expiry = extend_subscription(venue.subscription_expiry, package.duration_days, clock())
        venue.package_id = package.id
        venue.is_subscription_purchased = True


class IndividualOrderStrategy(OrderStrategy):
    order_type = OrderType.INDIVIDUAL
    model = Individual
    label = "Individual subscription"
    requires_package = True
    package_for = PackageFor.INDIVIDUAL

    def on_captured(self, db, history, payment, clock):
        individual = self.load_target(db, history)
        package = self.load_package(db, history)
        if not individual or not package:
            return
        _, individual.subscription_expiry = extend_subscription(
            individual.subscription_expiry, package.duration_days, clock()
        )
        individual.package_id = package.id
        individual.has_active_subscription = True


class BookingOrderStrategy(OrderStrategy):
    order_type = OrderType.BOOKING
    model = Booking
    label = "Booking"

    def validate(self, db, principal, request, now):
        context = super().validate(db, principal, request, now)
        booking = context.target
        if booking.user_id != principal.user_id:
            raise Forbidden("This booking belongs to another user")

        existing = open_booking_order(db, booking.id)
        if existing and existing.status == OrderStatus.SUCCESSFUL.value:
            raise AlreadyExists("Booking is already paid")
        if existing:
            raise AlreadyExists(f"A payment for this booking is already in progress (order {existing.order_id})")

        if not booking.lock_active(now):
            raise ValidationError("Slot hold has expired, please select your slots again")
        return context

    def on_order_created(self, db, history, context):
        booking = context.target
        booking.base_amount = history.base_amount
        booking.processing_fee = history.processing_fee
        booking.convenience_fee = history.convenience_fee
        booking.gst_amount = history.gst_amount
        booking.total_amount = history.total_amount

    def on_captured(self, db, history, payment, clock):
        booking = db.get(Booking, history.target_id)
        if not booking:
            logger.error(
                f"Captured payment {payment.razorpay_payment_id} for order {history.order_id} "
                f"but booking {history.target_id} was removed; manual refund required"
            )
            return
        SlotLockManager(db, clock=clock).confirm_booking(booking, payment.razorpay_payment_id)

    def on_failed(self, db, history, payment, clock):
        booking = db.get(Booking, history.target_id)
        if booking:
            SlotLockManager(db, clock=clock).release_lock(booking, reason="Payment failed", payment_failed=True)


ORDER_STRATEGIES: Dict[OrderType, OrderStrategy] = {
    strategy.order_type: strategy
    for strategy in (
        TournamentOrderStrategy(),
        SponsorOrderStrategy(),
        BannerOrderStrategy(),
        ShopOrderStrategy(),
        VenueOrderStrategy(),
        IndividualOrderStrategy(),
        BookingOrderStrategy(),
    )
}


def get_strategy(order_type) -> OrderStrategy:
    try:
        return ORDER_STRATEGIES[OrderType(order_type)]
    except ValueError:
        raise ValidationError(f"Unknown order type: {order_type}")
