"""
Payment reconciliation engine.

Ties the ledger, the enrollment store and the gateway together. The
callback path and the polling path go through the same transition rules
on `Payment` under a row lock, so whichever runs first decides the outcome
and the other becomes a no-op.
"""
import json
import logging
from decimal import Decimal
from typing import List, Optional

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from coursepay import enrollments, ledger
from coursepay.config import PAYMENT_CURRENCY, PAYMENT_TIMEOUT_MINUTES
from coursepay.exceptions import ConflictError, GatewayError, ValidationError
from coursepay.gateway import initiate_stk_push, normalize_phone
from coursepay.models import EnrollmentStatus, Payment, PaymentStatus
from coursepay.schemas import CallbackResponse, GatewayCallback, PaymentStatusOut

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "Payment verification timeout - no response from M-Pesa"
DUPLICATE_REASON = "Duplicate payment: enrollment already paid"
DECLINED_REASON = "Payment was not completed"


def initiate_payment(db: Session, enrollment_id: str, phone_number: str) -> Payment:
    """
    Start an M-Pesa payment for an enrollment.

    The charged amount is read from the enrollment record only. A gateway
    rejection is recorded as a FAILED payment and returned, not raised.
    """
    logger.info("Initiating payment for enrollment %s", enrollment_id)
    enrollment = enrollments.get_enrollment(db, enrollment_id)

    if ledger.has_successful_payment(db, enrollment.id) or enrollment.status in enrollments.ACCESS_GRANTING:
        raise ConflictError("Payment already completed for this enrollment")
    if enrollment.status != EnrollmentStatus.PENDING_PAYMENT:
        raise ValidationError(f"Enrollment is {enrollment.status.value.lower()} and cannot be paid for")

    phone = normalize_phone(phone_number)
    payment = ledger.create_payment(db, enrollment, phone, PAYMENT_CURRENCY)
    reference = payment.transaction_reference
    # the attempt is durable before the gateway hears about it
    db.commit()

    try:
        accepted = initiate_stk_push(phone, payment.amount, reference)
    except GatewayError as e:
        logger.error("STK push rejected for %s: %s", reference, e.diagnostic)
        return _record_initiation_failure(db, reference, f"Payment initiation failed: {e.message}", e.diagnostic)
    except Exception as e:
        logger.exception("Unexpected error initiating STK push for %s", reference)
        return _record_initiation_failure(db, reference, "Payment initiation error. Please try again.", str(e))

    # a fast callback may already have settled the row; mark_gateway_accepted respects that
    payment = ledger.get_by_reference(db, reference, lock=True)
    payment.mark_gateway_accepted(accepted.checkout_request_id)
    db.commit()

    logger.info("STK push sent: ref=%s checkout=%s amount=%s %s",
                reference, accepted.checkout_request_id, payment.amount, payment.currency)
    return payment


def _record_initiation_failure(db: Session, reference: str, reason: str, diagnostic: str) -> Payment:
    payment = ledger.get_by_reference(db, reference, lock=True)
    payment.mark_failed(reason, None, (diagnostic or "")[:500])
    db.commit()
    return payment


def get_status(db: Session, transaction_ref: str, timeout_minutes: Optional[int] = None) -> PaymentStatusOut:
    """
    Poll a payment. A stale INITIATED/PENDING payment is failed here, so
    polling settles abandoned prompts as well as observing them.
    """
    timeout = PAYMENT_TIMEOUT_MINUTES if timeout_minutes is None else timeout_minutes
    payment = _expire_if_stale(db, ledger.get_by_reference(db, transaction_ref, lock=True), timeout)
    db.commit()

    return PaymentStatusOut(
        payment_status=payment.status.value,
        transaction_reference=payment.transaction_reference,
        mpesa_receipt_number=payment.mpesa_receipt_number,
        failure_reason=payment.failure_reason,
        should_continue_polling=payment.is_pending(),
    )


def _expire_if_stale(db: Session, payment: Payment, timeout: int) -> Payment:
    if not payment.is_stale(timeout):
        return payment
    # a success callback for the same enrollment may be committing right now
    enrollments.lock_enrollment(db, payment.enrollment_id)
    payment = ledger.get_by_reference(db, payment.transaction_reference, lock=True)
    if payment.is_stale(timeout):
        logger.warning("Payment %s is stale (>%s min old), marking as timeout",
                       payment.transaction_reference, timeout)
        payment.mark_failed(TIMEOUT_REASON)
    return payment


def process_callback(db: Session, payload) -> bool:
    """
    Apply a gateway callback. Never raises: the gateway must always get an
    acknowledgement. Returns True when the callback changed state.
    """
    try:
        result = GatewayCallback.parse_payload(payload)
    except SchemaValidationError as e:
        logger.error("Malformed payment callback discarded: %s", e)
        return False

    if result is None or not (result.checkout_request_id or result.external_reference):
        logger.error("Payment callback without any reference discarded: %s", payload)
        return False

    try:
        return _reconcile(db, result, payload)
    except Exception:
        db.rollback()
        logger.exception("Error processing payment callback checkout=%s ref=%s",
                         result.checkout_request_id, result.external_reference)
        return False


def _reconcile(db: Session, result: CallbackResponse, payload) -> bool:
    payment = ledger.find_for_callback(db, result.checkout_request_id, result.external_reference)
    if payment is None:
        logger.warning("No payment for callback checkout=%s ref=%s; discarded",
                       result.checkout_request_id, result.external_reference)
        db.rollback()
        return False

    # all outcomes for one enrollment are decided one at a time; re-read behind the lock
    enrollments.lock_enrollment(db, payment.enrollment_id)
    payment = ledger.get_by_reference(db, payment.transaction_reference, lock=True)

    if payment.callback_received:
        logger.info("Duplicate callback for %s ignored", payment.transaction_reference)
        db.rollback()
        return False

    payment.callback_received = True
    payment.callback_data = json.dumps(payload, default=str)
    if not payment.checkout_request_id and result.checkout_request_id:
        payment.checkout_request_id = result.checkout_request_id

    if result.is_success():
        _apply_success(db, payment, result)
    else:
        _apply_failure(payment, result)

    db.commit()
    return True


def _apply_success(db: Session, payment: Payment, result: CallbackResponse):
    if result.amount is not None and Decimal(result.amount) != payment.amount:
        logger.error("Amount mismatch on %s: gateway reported %s, ledger has %s",
                     payment.transaction_reference, result.amount, payment.amount)

    already_paid = ledger.find_successful_payment(db, payment.enrollment_id, exclude_id=payment.id)
    if already_paid is not None:
        logger.error("Duplicate charge: %s (receipt %s) succeeded but enrollment %s was already paid by %s; "
                     "manual refund required", payment.transaction_reference, result.mpesa_receipt_number,
                     payment.enrollment_id, already_paid.transaction_reference)
        payment.mark_failed(DUPLICATE_REASON, result.result_code, result.result_desc)
        payment.mpesa_receipt_number = result.mpesa_receipt_number
        return

    if payment.status == PaymentStatus.FAILED:
        # money moved after we gave up on it; honour it
        logger.error("Late success for %s after it was marked failed (%s); receipt %s",
                     payment.transaction_reference, payment.failure_reason, result.mpesa_receipt_number)

    if not payment.mark_success(result.mpesa_receipt_number, result.result_code, result.result_desc):
        logger.info("Payment %s already settled as %s", payment.transaction_reference, payment.status.value)
        return
    db.flush()

    enrollments.activate(db, payment.enrollment_id, payment.id)
    logger.info("Payment SUCCESS: ref=%s receipt=%s amount=%s",
                payment.transaction_reference, result.mpesa_receipt_number, payment.amount)


def _apply_failure(payment: Payment, result: CallbackResponse):
    if payment.status == PaymentStatus.SUCCESS:
        logger.warning("Failure callback for %s after success ignored", payment.transaction_reference)
        return

    payment.mark_failed(result.result_desc or DECLINED_REASON, result.result_code, result.result_desc)
    logger.info("Payment FAILED: ref=%s code=%s reason=%s",
                payment.transaction_reference, result.result_code, result.result_desc)


def expire_stale_payments(db: Session, timeout_minutes: Optional[int] = None) -> int:
    """Sweep variant of the lazy timeout, same rule and same reason."""
    timeout = PAYMENT_TIMEOUT_MINUTES if timeout_minutes is None else timeout_minutes
    expired = 0
    for payment in ledger.find_stale(db, timeout):
        if _expire_if_stale(db, payment, timeout).status == PaymentStatus.FAILED:
            expired += 1
    db.commit()

    if expired:
        logger.warning("Expired %d stale payments", expired)
    return expired


def refund_payment(db: Session, transaction_ref: str) -> Payment:
    payment = ledger.get_by_reference(db, transaction_ref, lock=True)
    payment.mark_refunded()
    db.commit()
    logger.info("Payment %s refunded", transaction_ref)
    return payment


def list_payments(db: Session, status: Optional[str] = None) -> List[Payment]:
    if status and status.upper() not in PaymentStatus.__members__:
        raise ValidationError(f"Unknown payment status: {status}")
    return ledger.list_payments(db, status)
