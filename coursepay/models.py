import enum
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, Integer, Numeric, String, Text, UniqueConstraint
)

from coursepay.database import Base
from coursepay.exceptions import ConflictError


def utcnow() -> datetime:
    # naive UTC; SQLite drops tzinfo on the way back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class EnrollmentStatus(str, enum.Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class PaymentStatus(str, enum.Enum):
    INITIATED = "INITIATED"
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Course(Base):
    """Catalog projection: only what enrollment and payment need."""
    __tablename__ = "courses"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(200), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    is_published = Column(Boolean, nullable=False, default=False)
    enrollment_count = Column(Integer, nullable=False, default=0)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("student_id", "course_id", name="uk_student_course"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    student_id = Column(String(36), nullable=False, index=True)
    course_id = Column(String(36), nullable=False, index=True)
    price_paid = Column(Numeric(10, 2), nullable=False)          # captured at creation
    payment_id = Column(String(36), nullable=True)                # set on activation
    status = Column(Enum(EnrollmentStatus), nullable=False, default=EnrollmentStatus.PENDING_PAYMENT, index=True)
    progress_percentage = Column(Integer, nullable=False, default=0)
    videos_completed = Column(Boolean, nullable=False, default=False)
    quizzes_completed = Column(Boolean, nullable=False, default=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    last_accessed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)                  # null = lifetime access
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def is_expired(self, now=None) -> bool:
        return self.expires_at is not None and (now or utcnow()) >= self.expires_at

    def is_accessible(self, now=None) -> bool:
        return (
            self.status in (EnrollmentStatus.ACTIVE, EnrollmentStatus.COMPLETED)
            and not self.is_expired(now)
        )

    def update_progress(self, percentage: int):
        self.progress_percentage = min(max(percentage, 0), 100)
        self.last_accessed_at = utcnow()

    def mark_completed(self):
        if not (self.videos_completed and self.quizzes_completed):
            raise ConflictError("Enrollment cannot be completed before all videos and required quizzes are done")
        self.is_completed = True
        self.completed_at = utcnow()
        self.progress_percentage = 100
        self.status = EnrollmentStatus.COMPLETED

    def record_access(self):
        self.last_accessed_at = utcnow()


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    enrollment_id = Column(String(36), nullable=False, index=True)
    student_id = Column(String(36), nullable=False, index=True)
    course_id = Column(String(36), nullable=False)
    transaction_reference = Column(String(50), nullable=False, unique=True, index=True)
    checkout_request_id = Column(String(100), nullable=True, index=True)
    mpesa_receipt_number = Column(String(50), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)               # copied from enrollment.price_paid
    currency = Column(String(3), nullable=False, default="KES")
    phone_number = Column(String(15), nullable=False)
    payment_method = Column(String(20), nullable=False, default="MPESA")
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.INITIATED, index=True)
    result_code = Column(Integer, nullable=True)
    result_desc = Column(String(500), nullable=True)
    failure_reason = Column(String(500), nullable=True)
    callback_received = Column(Boolean, nullable=False, default=False)
    callback_data = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    def is_pending(self) -> bool:
        return self.status in (PaymentStatus.INITIATED, PaymentStatus.PENDING)

    def is_stale(self, timeout_minutes: int, now=None) -> bool:
        cutoff = (now or utcnow()) - timedelta(minutes=timeout_minutes)
        return self.is_pending() and self.created_at < cutoff

    def mark_gateway_accepted(self, checkout_request_id: str):
        self.checkout_request_id = checkout_request_id
        if self.is_pending():
            self.status = PaymentStatus.PENDING

    def mark_success(self, receipt, result_code=None, result_desc=None) -> bool:
        if self.status in (PaymentStatus.SUCCESS, PaymentStatus.REFUNDED):
            return False
        self.status = PaymentStatus.SUCCESS
        self.mpesa_receipt_number = receipt
        self.result_code = result_code
        self.result_desc = result_desc
        self.failure_reason = None
        self.completed_at = utcnow()
        return True

    def mark_failed(self, reason, result_code=None, result_desc=None) -> bool:
        # a late failure must never overwrite a confirmed success
        if self.status in (PaymentStatus.SUCCESS, PaymentStatus.REFUNDED):
            return False
        self.status = PaymentStatus.FAILED
        self.failure_reason = reason
        self.result_code = result_code
        self.result_desc = result_desc
        self.completed_at = utcnow()
        return True

    def mark_refunded(self):
        if self.status != PaymentStatus.SUCCESS:
            raise ConflictError(f"Only successful payments can be refunded (status: {self.status.value})")
        self.status = PaymentStatus.REFUNDED


class Video(Base):
    __tablename__ = "videos"

    id = Column(String(36), primary_key=True, default=new_id)
    course_id = Column(String(36), nullable=False, index=True)
    title = Column(String(200), nullable=False, default="")
    duration_seconds = Column(Integer, nullable=False, default=0)
    is_published = Column(Boolean, nullable=False, default=True)


class VideoProgress(Base):
    __tablename__ = "video_progress"
    __table_args__ = (
        UniqueConstraint("enrollment_id", "video_id", name="uk_enrollment_video"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    enrollment_id = Column(String(36), nullable=False, index=True)
    student_id = Column(String(36), nullable=False)
    course_id = Column(String(36), nullable=False)
    video_id = Column(String(36), nullable=False, index=True)
    last_position_seconds = Column(Integer, nullable=False, default=0)
    progress_percentage = Column(Integer, nullable=False, default=0)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    last_watched_at = Column(DateTime, nullable=True)

    def update_position(self, position_seconds: int, duration_seconds: int, threshold: int):
        self.last_position_seconds = position_seconds
        self.last_watched_at = utcnow()
        if duration_seconds > 0:
            self.progress_percentage = min(100, int(position_seconds * 100 / duration_seconds))
        # completion is sticky: rewinding never un-completes a video
        if self.progress_percentage >= threshold and not self.is_completed:
            self.is_completed = True
            self.completed_at = utcnow()


class Quiz(Base):
    __tablename__ = "quizzes"

    id = Column(String(36), primary_key=True, default=new_id)
    course_id = Column(String(36), nullable=False, index=True)
    title = Column(String(200), nullable=False, default="")
    is_required = Column(Boolean, nullable=False, default=True)
    passing_score = Column(Integer, nullable=False, default=70)


class QuizAttempt(Base):
    __tablename__ = "quiz_attempts"

    id = Column(String(36), primary_key=True, default=new_id)
    enrollment_id = Column(String(36), nullable=False, index=True)
    student_id = Column(String(36), nullable=False)
    quiz_id = Column(String(36), nullable=False, index=True)
    score = Column(Integer, nullable=False)
    is_passed = Column(Boolean, nullable=False, default=False)
    submitted_at = Column(DateTime, nullable=False, default=utcnow)
