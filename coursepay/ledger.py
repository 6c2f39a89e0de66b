"""
Payment ledger: one row per payment attempt for an enrollment.

State flow:
INITIATED → PENDING → SUCCESS | FAILED, SUCCESS → REFUNDED (admin only).
Stale INITIATED/PENDING rows become FAILED when read after the timeout.

The transition rules live on `Payment` (mark_* methods) so the callback
path and the polling path apply exactly the same ones.
"""
import logging
import secrets
import string
from typing import List, Optional

from sqlalchemy.orm import Session

from coursepay.config import PAYMENT_CURRENCY, TRANSACTION_REF_PREFIX
from coursepay.exceptions import NotFoundError
from coursepay.models import Enrollment, Payment, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

_REF_ALPHABET = string.ascii_uppercase + string.digits
_REF_LENGTH = 8


def generate_transaction_reference(db: Session) -> str:
    """Short prefix plus random alphanumeric suffix, e.g. CPY-7K2QX9AB."""
    while True:
        suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(_REF_LENGTH))
        reference = f"{TRANSACTION_REF_PREFIX}-{suffix}"
        if find_by_reference(db, reference) is None:
            return reference


def create_payment(db: Session, enrollment: Enrollment, phone_number: str,
                   currency: str = PAYMENT_CURRENCY) -> Payment:
    # amount always comes from the enrollment record, never from the request
    payment = Payment(
        enrollment_id=enrollment.id,
        student_id=enrollment.student_id,
        course_id=enrollment.course_id,
        transaction_reference=generate_transaction_reference(db),
        amount=enrollment.price_paid,
        currency=currency,
        phone_number=phone_number,
        payment_method="MPESA",
        status=PaymentStatus.INITIATED,
        callback_received=False,
    )
    db.add(payment)
    db.flush()
    logger.info("Payment %s created for enrollment %s: %s %s",
                payment.transaction_reference, enrollment.id, payment.amount, currency)
    return payment


def find_by_reference(db: Session, transaction_reference: str, lock: bool = False) -> Optional[Payment]:
    q = db.query(Payment).filter(Payment.transaction_reference == transaction_reference)
    if lock:
        q = q.with_for_update().populate_existing()
    return q.first()


def get_by_reference(db: Session, transaction_reference: str, lock: bool = False) -> Payment:
    payment = find_by_reference(db, transaction_reference, lock=lock)
    if payment is None:
        raise NotFoundError("Payment", "transactionReference", transaction_reference)
    return payment


def find_by_checkout_request_id(db: Session, checkout_request_id: str, lock: bool = False) -> Optional[Payment]:
    q = db.query(Payment).filter(Payment.checkout_request_id == checkout_request_id)
    if lock:
        q = q.with_for_update().populate_existing()
    return q.first()


def find_for_callback(db: Session, checkout_request_id: Optional[str],
                      external_reference: Optional[str]) -> Optional[Payment]:
    """Gateway checkout id first, then our own transaction reference."""
    payment = None
    if checkout_request_id:
        payment = find_by_checkout_request_id(db, checkout_request_id, lock=True)
    if payment is None and external_reference:
        payment = find_by_reference(db, external_reference, lock=True)
    return payment


def find_successful_payment(db: Session, enrollment_id: str, exclude_id: Optional[str] = None) -> Optional[Payment]:
    q = db.query(Payment).filter(
        Payment.enrollment_id == enrollment_id,
        Payment.status == PaymentStatus.SUCCESS,
    )
    if exclude_id:
        q = q.filter(Payment.id != exclude_id)
    return q.first()


def has_successful_payment(db: Session, enrollment_id: str) -> bool:
    return find_successful_payment(db, enrollment_id) is not None


def find_stale(db: Session, timeout_minutes: int) -> List[Payment]:
    now = utcnow()
    pending = (
        db.query(Payment)
        .filter(Payment.status.in_((PaymentStatus.INITIATED, PaymentStatus.PENDING)))
        .with_for_update()
        .all()
    )
    return [p for p in pending if p.is_stale(timeout_minutes, now)]


def list_payments(db: Session, status: Optional[str] = None) -> List[Payment]:
    q = db.query(Payment)
    if status:
        q = q.filter(Payment.status == PaymentStatus(status.upper()))
    return q.order_by(Payment.created_at.desc()).all()
