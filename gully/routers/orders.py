"""
Order endpoints

One POST route per purchase kind; all of them run through the same
reconciliation engine, which picks the kind's strategy.
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import Optional, Type
import logging

from ..database import get_db
from ..models.order import OrderType, OrderStatus
from ..schemas.common import ok
from ..schemas.order import ORDER_REQUEST_SCHEMAS, OrderCreateBase
from ..services.order_service import OrderReconciliationEngine
from ..services.razorpay_client import RazorpayClient, get_razorpay_client
from ..utils.dependencies import Principal, get_current_principal, require_admin
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["Orders"])


def _register_create_route(order_type: OrderType, schema: Type[OrderCreateBase]):
    def create_order(
        request: Request,
        payload: schema,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
        gateway: RazorpayClient = Depends(get_razorpay_client),
    ):
        result = OrderReconciliationEngine(db, gateway=gateway).create_order(principal, order_type, payload)
        return ok({"order": result["order"]}, result["message"])

    create_order.__name__ = f"create_{order_type.value}_order"
    endpoint = limiter.limit(get_rate_limit("order_create"))(create_order)
    router.add_api_route(
        f"/{order_type.value}",
        endpoint,
        methods=["POST"],
        status_code=201,
        summary=f"Create a {order_type.value} order",
    )


for _order_type, _schema in ORDER_REQUEST_SCHEMAS.items():
    _register_create_route(_order_type, _schema)


@router.get("/history")
@limiter.limit(get_rate_limit("history"))
def order_history(
    request: Request,
    order_type: Optional[OrderType] = Query(None),
    status: Optional[OrderStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """The caller's own transactions, newest first."""
    history = OrderReconciliationEngine(db).list_history(
        principal,
        order_type=order_type,
        status=status.value if status else None,
        page=page,
        page_size=page_size,
    )
    return ok(history, "Transaction history fetched successfully")


@router.delete("/history/{order_history_id}")
def purge_order(
    order_history_id: str,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    OrderReconciliationEngine(db).purge_history(order_history_id)
    logger.info(f"Admin {admin.user_id} purged transaction {order_history_id}")
    return ok(message="Transaction deleted successfully")


@router.delete("/history/user/{user_id}")
def purge_user_orders(
    user_id: str,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    deleted = OrderReconciliationEngine(db).purge_user_history(user_id)
    logger.info(f"Admin {admin.user_id} purged {deleted} transaction(s) of user {user_id}")
    return ok({"deleted": deleted}, "Transactions deleted successfully")
