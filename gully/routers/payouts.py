from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
import logging

from ..database import get_db
from ..schemas.common import ok
from ..schemas.payout import PayoutCreate, PayoutResponse
from ..services.payout_service import PayoutManager, PayoutRequest
from ..services.razorpay_client import RazorpayClient, get_razorpay_client
from ..utils.dependencies import Principal, require_admin
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payouts", tags=["Payouts"])


@router.post("", status_code=201)
@limiter.limit(get_rate_limit("payout_create"))
def create_payout(
    request: Request,
    payload: PayoutCreate,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_razorpay_client),
):
    payout = PayoutManager(db, gateway=gateway).create_payout(PayoutRequest(**payload.model_dump()))
    logger.info(f"Admin {admin.user_id} created payout {payout.id} ({payout.status})")
    return ok(PayoutResponse.model_validate(payout), "Payout created")


@router.get("/{payout_id}")
def get_payout(
    payout_id: str,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return ok(PayoutResponse.model_validate(PayoutManager(db).get(payout_id)))


@router.post("/{payout_id}/retry")
def retry_payout(
    payout_id: str,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_razorpay_client),
):
    manager = PayoutManager(db, gateway=gateway)
    payout = manager.retry(manager.get(payout_id))
    return ok(PayoutResponse.model_validate(payout), f"Payout retry submitted ({payout.status})")


@router.post("/{payout_id}/sync")
def sync_payout(
    payout_id: str,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_razorpay_client),
):
    manager = PayoutManager(db, gateway=gateway)
    payout = manager.sync_status(manager.get(payout_id))
    return ok(PayoutResponse.model_validate(payout), "Payout status synced")
