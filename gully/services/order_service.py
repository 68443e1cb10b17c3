"""
Order Reconciliation Engine

Creates gateway orders for every purchase kind and reconciles their payment
state from gateway webhooks.

Order creation:
1. Validate the target through the kind's strategy
2. Mint a Razorpay order (amount in paise)
3. Persist OrderHistory, then Payment, both Pending
4. If the Payment write fails, mark the OrderHistory Failed

Reconciliation (webhook):
- captured -> both records Successful, kind side effect applied
- failed   -> both records Failed, kind failure hook applied
- replays are no-ops and Successful is never downgraded
- notifications are queued in the same commit
"""

import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.order import (
    OrderHistory,
    Payment,
    OrderStatus,
    OrderType,
    GATEWAY_METHOD_MAP,
)
from ..schemas.order import OrderCreateBase, OrderHistoryResponse
from ..utils.clock import utcnow
from ..utils.db_helpers import acquire_row_lock
from ..utils.dependencies import Principal
from ..utils.errors import NotFound, ServerError
from ..utils.logging_config import get_logger
from ..utils.money import from_minor_units, split_gst, to_decimal, to_minor_units
from .notification_service import NotificationService
from .order_strategies import OrderStrategy, get_strategy
from .razorpay_client import RazorpayClient, get_razorpay_client

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

GATEWAY_CAPTURED = "captured"
GATEWAY_FAILED = "failed"

TERMINAL_GATEWAY_STATUSES = {
    GATEWAY_CAPTURED: OrderStatus.SUCCESSFUL,
    GATEWAY_FAILED: OrderStatus.FAILED,
}


@dataclass
class ReconcileResult:
    action: str  # applied, already_applied, ignored, order_not_found
    order_id: str
    status: Optional[str] = None

    @property
    def order_found(self) -> bool:
        return self.action != "order_not_found"


def new_receipt() -> str:
    return f"order_receipt_{secrets.token_hex(10)}"


class OrderReconciliationEngine:
    def __init__(
        self,
        db: Session,
        gateway: Optional[RazorpayClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self._gateway = gateway
        self.clock = clock

    @property
    def gateway(self) -> RazorpayClient:
        if self._gateway is None:
            self._gateway = get_razorpay_client()
        return self._gateway

    # ==================
    # Order creation
    # ==================

    def _fee_breakdown(self, strategy: OrderStrategy, request: OrderCreateBase, amount: Decimal) -> dict:
        total = request.total_amount if request.total_amount is not None else amount
        base = request.base_amount
        gst = request.gst_amount
        if gst is None and strategy.derive_gst:
            derived_base, gst = split_gst(total, settings.gst_rate_percent)
            if base is None:
                base = derived_base
        return {
            "base_amount": base if base is not None else total,
            "processing_fee": request.processing_fee or Decimal("0"),
            "convenience_fee": request.convenience_fee or Decimal("0"),
            "gst_amount": gst or Decimal("0"),
            "total_amount": total,
        }

    def create_order(self, principal: Principal, order_type: OrderType, request: OrderCreateBase) -> dict:
        """
        Create a gateway order and its Pending OrderHistory + Payment pair.

        Returns {"order": <gateway order>, "message": str}.

        Raises:
            NotFound / ValidationError / Forbidden / AlreadyExists: target checks
            GatewayUnavailable: the gateway could not mint the order
            ServerError: the order could not be recorded
        """
        strategy = get_strategy(order_type)
        context = strategy.validate(self.db, principal, request, self.clock())

        amount = to_decimal(request.amount)
        target_id = request.target_id()
        receipt = new_receipt()
        gateway_order = self.gateway.create_order(
            to_minor_units(amount),
            settings.currency,
            receipt,
            notes={"order_type": strategy.order_type.value, "target_id": target_id, "user_id": principal.user_id},
        )
        order_id = gateway_order["id"]
        fees = self._fee_breakdown(strategy, request, amount)

        history = OrderHistory(
            order_id=order_id,
            user_id=principal.user_id,
            order_type=strategy.order_type.value,
            target_id=target_id,
            package_id=request.package_id,
            amount=amount,
            amount_paid=Decimal("0"),
            amount_due=amount,
            amount_without_coupon=request.amount_without_coupon,
            coupon=request.coupon,
            currency=settings.currency,
            receipt=receipt,
            status=OrderStatus.PENDING.value,
            **fees,
        )
        try:
            self.db.add(history)
            self.db.flush()
            strategy.on_order_created(self.db, history, context)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not record order history for gateway order {order_id}: {e}")
            raise ServerError("Could not record the order, please try again")

        history_id = history.id
        try:
            self.db.add(Payment(
                order_id=order_id,
                user_id=principal.user_id,
                order_type=strategy.order_type.value,
                target_id=target_id,
                payment_mode=request.payment_mode.value if request.payment_mode else None,
                razorpay_payment_id=request.razorpay_payment_id,
                amount=amount,
                amount_paid=Decimal("0"),
                currency=settings.currency,
                receipt=receipt,
                payment_status=OrderStatus.PENDING.value,
                **fees,
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            self._compensate_history(history_id, order_id, e)
            raise ServerError("Could not record the payment, please try again")

        logger.info(
            f"Created {strategy.order_type.value} order {order_id} for user {principal.user_id}: "
            f"{amount} {settings.currency}"
        )
        return {"order": gateway_order, "message": strategy.created_message}

    def _compensate_history(self, history_id: str, order_id: str, cause: Exception) -> None:
        logger.error(f"Payment write failed for order {order_id}, marking history Failed: {cause}")
        try:
            history = self.db.get(OrderHistory, history_id)
            if history:
                history.status = OrderStatus.FAILED.value
                self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.critical(f"Order {order_id} left Pending without a Payment row: {e}")

    # ==================
    # Reconciliation
    # ==================

    def apply_payment_status(
        self,
        order_id: str,
        gateway_status: str,
        amount_minor: Optional[int] = None,
        razorpay_payment_id: Optional[str] = None,
        method: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Apply a gateway payment status to the order's OrderHistory and Payment.

        Both rows and the kind's side effect are committed together.
        """
        new_status = TERMINAL_GATEWAY_STATUSES.get((gateway_status or "").lower())
        if new_status is None:
            logger.info(f"Ignoring non-terminal payment status '{gateway_status}' for order {order_id}")
            return ReconcileResult("ignored", order_id)

        history = acquire_row_lock(self.db, OrderHistory, OrderHistory.order_id == order_id)
        payment = acquire_row_lock(self.db, Payment, Payment.order_id == order_id)
        if not history or not payment:
            self.db.rollback()
            logger.warning(f"No order rows yet for {order_id} (status {gateway_status})")
            return ReconcileResult("order_not_found", order_id)

        old_status = history.status
        if old_status == new_status.value and payment.payment_status == new_status.value:
            self.db.rollback()
            return ReconcileResult("already_applied", order_id, old_status)

        if old_status == OrderStatus.SUCCESSFUL.value and new_status == OrderStatus.FAILED:
            self.db.rollback()
            logger.warning(f"Ignoring failed status for already successful order {order_id}")
            return ReconcileResult("ignored", order_id, old_status)

        now = self.clock()
        if razorpay_payment_id:
            payment.razorpay_payment_id = razorpay_payment_id

        if new_status == OrderStatus.SUCCESSFUL:
            paid = from_minor_units(amount_minor) if amount_minor is not None else to_decimal(history.amount)
            if paid != to_decimal(history.amount):
                logger.warning(f"Order {order_id} captured {paid} but was created for {history.amount}")
            history.amount_paid = paid
            history.amount_due = Decimal("0")
            payment.amount_paid = paid
            payment.transaction_id = razorpay_payment_id or payment.transaction_id
            payment.payment_mode = GATEWAY_METHOD_MAP.get((method or "").lower(), payment.payment_mode)
            payment.payment_date = now
        else:
            history.amount_paid = Decimal("0")
            history.amount_due = history.amount
            payment.amount_paid = Decimal("0")

        history.status = new_status.value
        payment.payment_status = new_status.value

        strategy = get_strategy(history.order_type)
        if new_status == OrderStatus.SUCCESSFUL:
            strategy.on_captured(self.db, history, payment, self.clock)
        else:
            strategy.on_failed(self.db, history, payment, self.clock)

        self._queue_notification(strategy, history)

        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        structured_logger.order_status_changed(order_id, history.order_type, old_status, new_status.value)
        return ReconcileResult("applied", order_id, new_status.value)

    def _queue_notification(self, strategy: OrderStrategy, history: OrderHistory) -> None:
        if history.status == OrderStatus.SUCCESSFUL.value:
            title = f"{strategy.label} payment successful"
            body = f"We received Rs. {history.amount_paid} for your {strategy.label.lower()} order {history.order_id}."
        else:
            title = f"{strategy.label} payment failed"
            body = f"Your payment of Rs. {history.amount} for order {history.order_id} did not go through. Please try again."

        NotificationService(self.db, clock=self.clock).enqueue(
            user_id=history.user_id,
            event_type=f"payment_{history.status.lower()}",
            title=title,
            body=body,
            idempotency_key=f"order:{history.order_id}:{history.status}",
            data={"order_id": history.order_id, "order_type": history.order_type},
        )

    # ==================
    # Transaction history
    # ==================

    def list_history(
        self,
        principal: Principal,
        order_type: Optional[OrderType] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict:
        query = self.db.query(OrderHistory).filter(OrderHistory.user_id == principal.user_id)
        if order_type:
            query = query.filter(OrderHistory.order_type == OrderType(order_type).value)
        if status:
            query = query.filter(OrderHistory.status == status)

        total = query.count()
        rows = (
            query.order_by(OrderHistory.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )

        payments = {}
        if rows:
            payments = {
                p.order_id: p
                for p in self.db.query(Payment).filter(Payment.order_id.in_([r.order_id for r in rows])).all()
            }

        items = []
        for row in rows:
            item = OrderHistoryResponse.model_validate(row)
            payment = payments.get(row.order_id)
            if payment:
                item.payment_mode = payment.payment_mode
                item.razorpay_payment_id = payment.razorpay_payment_id
            items.append(item)

        return {
            "items": items,
            "page": page,
            "page_size": page_size,
            "total": total,
            "total_pages": math.ceil(total / page_size) if page_size else 0,
        }

    def purge_history(self, order_history_id: str) -> None:
        """Admin purge of one OrderHistory row and its Payment."""
        history = self.db.get(OrderHistory, order_history_id)
        if not history:
            raise NotFound("Transaction not found")
        self.db.query(Payment).filter(Payment.order_id == history.order_id).delete(synchronize_session=False)
        self.db.delete(history)
        self.db.commit()
        logger.warning(f"Purged order {history.order_id} ({history.order_type})")

    def purge_user_history(self, user_id: str) -> int:
        order_ids = [row.order_id for row in self.db.query(OrderHistory.order_id).filter(OrderHistory.user_id == user_id)]
        if not order_ids:
            return 0
        self.db.query(Payment).filter(Payment.order_id.in_(order_ids)).delete(synchronize_session=False)
        deleted = self.db.query(OrderHistory).filter(OrderHistory.user_id == user_id).delete(synchronize_session=False)
        self.db.commit()
        logger.warning(f"Purged {deleted} order(s) for user {user_id}")
        return deleted
