"""
Payout Manager

Sends money to venues and individuals over RazorpayX (UPI fund accounts)
and tracks each payout through the gateway's lifecycle.

- Every payout carries a caller-supplied idempotency key; a repeated key
  is rejected, never paid twice
- Status changes follow ALLOWED_TRANSITIONS; anything else is logged and ignored
- A submission that timed out is reconciled by reference and resent under
  the same gateway idempotency key; only a definitive failure starts a new
  gateway transfer
- Failed payouts are retried with backoff up to ``max_retries`` and then
  flagged for manual review
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.individual import Individual
from ..models.payout import Payout, PayoutStatus, PayoutPurpose, BeneficiaryType
from ..models.venue import Venue
from ..utils.clock import utcnow
from ..utils.db_helpers import acquire_row_lock, AtomicCounter
from ..utils.errors import AlreadyExists, GatewayUnavailable, NotFound, ValidationError
from ..utils.logging_config import get_logger
from ..utils.money import to_decimal, to_minor_units
from .notification_service import NotificationService
from .razorpay_client import RazorpayClient, get_razorpay_client

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)


ALLOWED_TRANSITIONS: Dict[PayoutStatus, Set[PayoutStatus]] = {
    PayoutStatus.QUEUED: {
        PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.PROCESSED,
        PayoutStatus.REJECTED, PayoutStatus.CANCELLED, PayoutStatus.FAILED,
    },
    PayoutStatus.PENDING: {
        PayoutStatus.PROCESSING, PayoutStatus.PROCESSED, PayoutStatus.REJECTED,
        PayoutStatus.CANCELLED, PayoutStatus.FAILED,
    },
    PayoutStatus.PROCESSING: {PayoutStatus.PROCESSED, PayoutStatus.FAILED, PayoutStatus.REVERSED},
    PayoutStatus.PROCESSED: {PayoutStatus.REVERSED},
    PayoutStatus.FAILED: {PayoutStatus.PROCESSING},  # retry only
    PayoutStatus.REJECTED: set(),
    PayoutStatus.CANCELLED: set(),
    PayoutStatus.REVERSED: set(),
}


def can_transition(current: str, new: str) -> bool:
    try:
        return PayoutStatus(new) in ALLOWED_TRANSITIONS[PayoutStatus(current)]
    except ValueError:
        return False


def transfer_reference(idempotency_key: str, attempt: int = 0) -> str:
    """Gateway reference_id (max 40 chars) for the n-th transfer of a payout."""
    if attempt == 0:
        return idempotency_key[:40]
    return f"{idempotency_key[:32]}-r{attempt}"


@dataclass
class PayoutRequest:
    idempotency_key: str
    beneficiary_type: BeneficiaryType
    beneficiary_id: str
    amount: Decimal
    purpose: PayoutPurpose = PayoutPurpose.PAYOUT
    booking_id: Optional[str] = None
    narration: Optional[str] = None
    mode: str = "UPI"


class PayoutManager:
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
    # Beneficiaries
    # ==================

    def _beneficiary(self, beneficiary_type: BeneficiaryType, beneficiary_id: str):
        model = Venue if BeneficiaryType(beneficiary_type) == BeneficiaryType.VENUE else Individual
        beneficiary = self.db.get(model, beneficiary_id)
        if not beneficiary:
            raise NotFound(f"{BeneficiaryType(beneficiary_type).value.title()} not found")
        return beneficiary

    def ensure_fund_account(self, beneficiary) -> str:
        """Create (once) the gateway contact and UPI fund account for a beneficiary."""
        if beneficiary.razorpay_fund_account_id:
            return beneficiary.razorpay_fund_account_id
        if not beneficiary.upi_id:
            raise ValidationError("Beneficiary has no UPI id on file")

        if not beneficiary.razorpay_contact_id:
            name = getattr(beneficiary, "name", None) or getattr(beneficiary, "full_name", None) or beneficiary.id
            contact = self.gateway.create_contact(name=name, reference_id=beneficiary.id)
            beneficiary.razorpay_contact_id = contact["id"]

        fund_account = self.gateway.create_fund_account(beneficiary.razorpay_contact_id, beneficiary.upi_id)
        beneficiary.razorpay_fund_account_id = fund_account["id"]
        self.db.commit()
        return beneficiary.razorpay_fund_account_id

    # ==================
    # Creation / submission
    # ==================

    def create_payout(self, request: PayoutRequest) -> Payout:
        """
        Record and submit a payout.

        Raises:
            AlreadyExists: the idempotency key was used before
            NotFound: beneficiary missing
            ValidationError: bad amount or no UPI id
        """
        if not request.idempotency_key:
            raise ValidationError("idempotency_key is required")
        amount = to_decimal(request.amount)
        if amount <= 0:
            raise ValidationError("Payout amount must be positive")

        existing = self.db.query(Payout).filter(Payout.idempotency_key == request.idempotency_key).first()
        if existing:
            raise AlreadyExists(f"Payout with idempotency key '{request.idempotency_key}' already exists")

        beneficiary = self._beneficiary(request.beneficiary_type, request.beneficiary_id)
        fund_account_id = self.ensure_fund_account(beneficiary)

        payout = Payout(
            fund_account_id=fund_account_id,
            user_id=beneficiary.user_id,
            beneficiary_type=BeneficiaryType(request.beneficiary_type).value,
            beneficiary_id=beneficiary.id,
            booking_id=request.booking_id,
            recipient_vpa=beneficiary.upi_id,
            amount=amount,
            currency=settings.currency,
            mode=request.mode,
            purpose=PayoutPurpose(request.purpose).value,
            reference_id=transfer_reference(request.idempotency_key),
            narration=request.narration,
            idempotency_key=request.idempotency_key,
            gateway_idempotency_key=request.idempotency_key,
            status=PayoutStatus.QUEUED.value,
            max_retries=settings.payout_max_retries,
        )
        try:
            self.db.add(payout)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise AlreadyExists(f"Payout with idempotency key '{request.idempotency_key}' already exists")

        logger.info(f"Payout {payout.id} queued: {amount} to {payout.beneficiary_type} {payout.beneficiary_id}")
        self._submit(payout)
        return payout

    def _submit(self, payout: Payout) -> None:
        """
        Send the current transfer to the gateway.

        A 400 is a definitive rejection and fails the payout. A timeout or
        outage leaves the outcome unknown: the payout keeps its status and is
        flagged ``submission_unconfirmed`` so that later attempts reconcile
        by reference and resend the same gateway idempotency key.
        """
        try:
            response = self.gateway.create_payout(
                fund_account_id=payout.fund_account_id,
                amount_minor=to_minor_units(payout.amount),
                currency=payout.currency,
                purpose=payout.purpose,
                reference_id=payout.reference_id,
                idempotency_key=payout.gateway_idempotency_key,
                mode=payout.mode,
                narration=payout.narration,
            )
        except ValidationError as e:
            payout.submission_unconfirmed = False
            self.apply_status(payout, PayoutStatus.FAILED.value, failure_reason=e.message)
            self.db.commit()
            return
        except GatewayUnavailable as e:
            payout.submission_unconfirmed = True
            payout.failure_reason = e.message
            self.db.commit()
            logger.warning(
                f"Payout {payout.id} submission unconfirmed ({e.message}); "
                f"will reconcile reference {payout.reference_id}"
            )
            return

        self._bind_transfer(payout, response)
        self.db.commit()

    def _bind_transfer(self, payout: Payout, transfer: dict) -> None:
        """Attach a gateway payout to the row and apply its status. Does not commit."""
        payout.razorpay_payout_id = transfer.get("id")
        payout.gateway_response = transfer
        payout.submission_unconfirmed = False
        if payout.status != PayoutStatus.FAILED.value:
            payout.failure_reason = None
        status = transfer.get("status")
        if status and status != payout.status:
            self.apply_status(payout, status, failure_reason=(transfer.get("status_details") or {}).get("description"))

    def reconcile_submission(self, payout: Payout) -> Payout:
        """
        Settle a submission whose outcome is unknown.

        Looks the transfer up by reference first; when the gateway has none,
        resends it with the same gateway idempotency key so the gateway can
        never create a second transfer for it.
        """
        if not payout.submission_unconfirmed:
            raise ValidationError("Payout submission is not awaiting confirmation")

        payout.retry_count += 1
        payout.last_retry_at = self.clock()
        self.db.commit()

        transfer = self.gateway.find_payout_by_reference(payout.reference_id)
        if transfer:
            logger.info(f"Payout {payout.id} found at gateway as {transfer.get('id')}")
            self._bind_transfer(payout, transfer)
            self.db.commit()
            return payout

        logger.info(f"Resubmitting payout {payout.id} with key {payout.gateway_idempotency_key}")
        self._submit(payout)
        return payout

    # ==================
    # Status machine
    # ==================

    def apply_status(
        self,
        payout: Payout,
        new_status: str,
        failure_reason: Optional[str] = None,
        webhook_data: Optional[dict] = None,
    ) -> bool:
        """
        Move a payout to ``new_status`` if the transition is allowed. Does not commit.

        Returns False for no-ops and rejected transitions.
        """
        if webhook_data is not None:
            payout.webhook_data = webhook_data

        current = payout.status
        if new_status == current:
            return False
        if not can_transition(current, new_status):
            logger.warning(f"Ignoring payout {payout.id} transition {current} -> {new_status}")
            return False

        payout.status = new_status
        now = self.clock()

        if new_status == PayoutStatus.PROCESSED.value:
            payout.processed_at = now
            payout.failure_reason = None
            if payout.beneficiary_type == BeneficiaryType.VENUE.value:
                venue_filter = Venue.id == payout.beneficiary_id
                AtomicCounter.increment(self.db, Venue, venue_filter, "total_amount_paid", payout.amount)
                AtomicCounter.increment(self.db, Venue, venue_filter, "amount_need_to_pay", -to_decimal(payout.amount))
            self._notify(payout, "Payout processed", f"Rs. {payout.amount} has been sent to {payout.recipient_vpa}.")

        elif new_status in (PayoutStatus.FAILED.value, PayoutStatus.REJECTED.value, PayoutStatus.REVERSED.value):
            payout.failure_reason = failure_reason or payout.failure_reason
            if new_status == PayoutStatus.REVERSED.value and current == PayoutStatus.PROCESSED.value:
                if payout.beneficiary_type == BeneficiaryType.VENUE.value:
                    venue_filter = Venue.id == payout.beneficiary_id
                    AtomicCounter.increment(self.db, Venue, venue_filter, "total_amount_paid", -to_decimal(payout.amount))
                    AtomicCounter.increment(self.db, Venue, venue_filter, "amount_need_to_pay", payout.amount)
            if new_status == PayoutStatus.FAILED.value and payout.retries_exhausted:
                payout.needs_manual_review = True
                logger.error(
                    f"Payout {payout.id} failed after {payout.retry_count} retries; manual review required"
                )
            elif new_status != PayoutStatus.FAILED.value:
                payout.needs_manual_review = True

        structured_logger.payout_status_changed(payout.id, current, new_status, failure_reason)
        return True

    def _notify(self, payout: Payout, title: str, body: str) -> None:
        NotificationService(self.db, clock=self.clock).enqueue(
            user_id=payout.user_id,
            event_type=f"payout_{payout.status}",
            title=title,
            body=body,
            idempotency_key=f"payout:{payout.id}:{payout.status}",
            data={"payout_id": payout.id},
        )

    def handle_gateway_event(
        self,
        razorpay_payout_id: str,
        status: str,
        failure_reason: Optional[str] = None,
        payload: Optional[dict] = None,
        reference_id: Optional[str] = None,
    ) -> Optional[Payout]:
        """
        Apply a payout.* webhook. Returns None when the payout is unknown (yet).

        A transfer whose submission timed out has no gateway id on the row
        yet; it is matched on reference_id and bound here.
        """
        payout = acquire_row_lock(self.db, Payout, Payout.razorpay_payout_id == razorpay_payout_id)
        if not payout and reference_id:
            payout = acquire_row_lock(
                self.db,
                Payout,
                (Payout.reference_id == reference_id) & Payout.razorpay_payout_id.is_(None),
            )
            if payout:
                logger.info(f"Matched gateway payout {razorpay_payout_id} to payout {payout.id} by reference")
                payout.razorpay_payout_id = razorpay_payout_id
                payout.submission_unconfirmed = False
        if not payout:
            self.db.rollback()
            return None
        self.apply_status(payout, status, failure_reason=failure_reason, webhook_data=payload)
        self.db.commit()
        return payout

    def sync_status(self, payout: Payout) -> Payout:
        """Poll the gateway for the payout's current status."""
        if not payout.razorpay_payout_id:
            transfer = self.gateway.find_payout_by_reference(payout.reference_id)
            if not transfer:
                raise ValidationError("Payout was never accepted by the gateway")
            self._bind_transfer(payout, transfer)
            self.db.commit()
            return payout

        response = self.gateway.fetch_payout(payout.razorpay_payout_id)
        payout.gateway_response = response
        reason = (response.get("status_details") or {}).get("description") or response.get("failure_reason")
        self.apply_status(payout, response.get("status", payout.status), failure_reason=reason)
        self.db.commit()
        return payout

    # ==================
    # Retries
    # ==================

    def backoff_for(self, payout: Payout) -> timedelta:
        """base * 2^retry_count minutes, capped at an hour"""
        minutes = min(settings.payout_retry_base_minutes * (2 ** payout.retry_count), 60)
        return timedelta(minutes=minutes)

    def _check_retry_limit(self, payout: Payout) -> None:
        if payout.retries_exhausted:
            payout.needs_manual_review = True
            self.db.commit()
            raise ValidationError(f"Payout reached its retry limit of {payout.max_retries}")

    def retry(self, payout: Payout) -> Payout:
        """
        Retry a payout.

        An unconfirmed submission is reconciled under its existing gateway
        key. Only a definitively failed payout starts a new gateway transfer
        with key ``<key>-retry-<n>``.
        """
        if payout.submission_unconfirmed and not payout.razorpay_payout_id:
            self._check_retry_limit(payout)
            return self.reconcile_submission(payout)
        if payout.status != PayoutStatus.FAILED.value:
            raise ValidationError(f"Only failed payouts can be retried (status: {payout.status})")
        self._check_retry_limit(payout)

        payout.retry_count += 1
        payout.last_retry_at = self.clock()
        payout.gateway_idempotency_key = f"{payout.idempotency_key}-retry-{payout.retry_count}"
        payout.reference_id = transfer_reference(payout.idempotency_key, payout.retry_count)
        payout.razorpay_payout_id = None
        self.apply_status(payout, PayoutStatus.PROCESSING.value)
        self.db.commit()

        logger.info(f"Retrying payout {payout.id} (attempt {payout.retry_count}/{payout.max_retries})")
        self._submit(payout)
        return payout

    def retry_due(self, limit: int = 20) -> List[Payout]:
        """
        Payouts whose backoff has elapsed and that still have retries left:
        definitively failed ones and submissions awaiting confirmation.
        """
        now = self.clock()
        candidates = self.db.query(Payout).filter(
            or_(
                Payout.status == PayoutStatus.FAILED.value,
                Payout.submission_unconfirmed.is_(True) & Payout.razorpay_payout_id.is_(None),
            ),
            Payout.retry_count < Payout.max_retries,
            Payout.needs_manual_review.is_(False),
        ).order_by(Payout.updated_at).limit(limit).all()

        due = [
            p for p in candidates
            if (p.last_retry_at or p.updated_at or p.created_at) + self.backoff_for(p) <= now
        ]
        retried = []
        for payout in due:
            try:
                retried.append(self.retry(payout))
            except ValidationError as e:
                logger.warning(f"Skipping retry for payout {payout.id}: {e.message}")
            except GatewayUnavailable as e:
                logger.warning(f"Gateway unavailable while retrying payout {payout.id}: {e.message}")
        return retried

    def get(self, payout_id: str) -> Payout:
        payout = self.db.get(Payout, payout_id)
        if not payout:
            raise NotFound("Payout not found")
        return payout
