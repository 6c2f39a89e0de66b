from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from coursepay.models import EnrollmentStatus, Payment


class CamelModel(BaseModel):
    # camelCase on the wire, snake_case accepted too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- enrollments ---

class EnrollRequest(CamelModel):
    student_id: str
    course_id: str


class EnrollmentOut(CamelModel):
    id: str
    student_id: str
    course_id: str
    price_paid: Decimal
    payment_id: Optional[str] = None
    status: EnrollmentStatus
    progress_percentage: int
    videos_completed: bool
    quizzes_completed: bool
    is_completed: bool
    completed_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AccessOut(CamelModel):
    student_id: str
    course_id: str
    accessible: bool


# --- payments ---

class PaymentRequest(CamelModel):
    # any client-supplied amount is ignored; the enrollment's price is charged
    enrollment_id: str
    phone_number: str


class PaymentOut(CamelModel):
    id: str
    enrollment_id: str
    transaction_reference: str
    checkout_request_id: Optional[str] = None
    amount: Decimal
    currency: str
    phone_number: str
    payment_status: str
    mpesa_receipt_number: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentOut":
        return cls(
            id=payment.id,
            enrollment_id=payment.enrollment_id,
            transaction_reference=payment.transaction_reference,
            checkout_request_id=payment.checkout_request_id,
            amount=payment.amount,
            currency=payment.currency,
            phone_number=payment.phone_number,
            payment_status=payment.status.value,
            mpesa_receipt_number=payment.mpesa_receipt_number,
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            completed_at=payment.completed_at,
        )


class PaymentStatusOut(CamelModel):
    payment_status: str
    transaction_reference: str
    mpesa_receipt_number: Optional[str] = None
    failure_reason: Optional[str] = None
    should_continue_polling: bool


class StaleSweepOut(CamelModel):
    expired: int


# --- gateway callback ---

class CallbackResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    external_reference: Optional[str] = Field(None, alias="ExternalReference")
    checkout_request_id: Optional[str] = Field(None, alias="CheckoutRequestID")
    result_code: Optional[int] = Field(None, alias="ResultCode")
    result_desc: Optional[str] = Field(None, alias="ResultDesc")
    amount: Optional[Decimal] = Field(None, alias="Amount")
    mpesa_receipt_number: Optional[str] = Field(None, alias="MpesaReceiptNumber")
    phone: Optional[str] = Field(None, alias="Phone")
    status: Optional[str] = Field(None, alias="Status")

    @field_validator("phone", "mpesa_receipt_number", "external_reference", "checkout_request_id", mode="before")
    @classmethod
    def _stringify(cls, value):
        if value is None or value == "":
            return None
        return str(value)

    def is_success(self) -> bool:
        # the gateway contract: ResultCode 0 means the money moved
        return self.result_code == 0


class GatewayCallback(BaseModel):
    status: Optional[Union[bool, str]] = None
    response: Optional[CallbackResponse] = None

    @classmethod
    def parse_payload(cls, payload) -> Optional[CallbackResponse]:
        """Accept the PayHero envelope or a flat result object."""
        if not isinstance(payload, dict):
            return None
        if "response" in payload:
            return cls.model_validate(payload).response
        return CallbackResponse.model_validate(payload)


# --- progress events ---

class ProgressEvent(CamelModel):
    student_id: str
    course_id: str


class VideoPositionRequest(CamelModel):
    student_id: str
    video_id: str
    position_seconds: int = Field(ge=0)


class QuizAttemptRequest(CamelModel):
    student_id: str
    quiz_id: str
    score: int = Field(ge=0, le=100)


class QuizAttemptOut(CamelModel):
    id: str
    enrollment_id: str
    quiz_id: str
    score: int
    is_passed: bool


class VideoProgressOut(CamelModel):
    enrollment_id: str
    video_id: str
    last_position_seconds: int
    progress_percentage: int
    is_completed: bool
