"""
Enrollment store: a student's access relationship to a course.

State flow:
PENDING_PAYMENT → ACTIVE → COMPLETED, ACTIVE ↔ SUSPENDED,
ACTIVE → EXPIRED (time-driven), any → CANCELLED.

`create`, `activate` and the counter increment only flush; they run inside
the caller's transaction so a payment success and the activation it causes
commit together. The remaining public functions are whole units of work and
commit.
"""
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursepay.exceptions import ConflictError, NotFoundError, ValidationError
from coursepay.models import Course, Enrollment, EnrollmentStatus

logger = logging.getLogger(__name__)

ACCESS_GRANTING = (EnrollmentStatus.ACTIVE, EnrollmentStatus.COMPLETED)


def _increment_enrollment_count(db: Session, course_id: str):
    db.query(Course).filter(Course.id == course_id).update(
        {Course.enrollment_count: Course.enrollment_count + 1},
        synchronize_session=False,
    )


def lock_enrollment(db: Session, enrollment_id: str) -> Enrollment:
    """
    Load an enrollment holding its write lock until the transaction ends.

    Payment and progress decisions for one enrollment run one at a time
    behind this lock. The no-op UPDATE takes the lock on backends that
    ignore FOR UPDATE (SQLite); elsewhere it is the row lock itself.
    """
    db.query(Enrollment).filter(Enrollment.id == enrollment_id).update(
        {Enrollment.updated_at: Enrollment.updated_at},
        synchronize_session=False,
    )
    enrollment = (
        db.query(Enrollment)
        .filter(Enrollment.id == enrollment_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if enrollment is None:
        raise NotFoundError("Enrollment", "id", enrollment_id)
    return enrollment


def get_enrollment(db: Session, enrollment_id: str) -> Enrollment:
    enrollment = db.get(Enrollment, enrollment_id)
    if enrollment is None:
        raise NotFoundError("Enrollment", "id", enrollment_id)
    return enrollment


def find_enrollment(db: Session, student_id: str, course_id: str) -> Optional[Enrollment]:
    return db.query(Enrollment).filter_by(student_id=student_id, course_id=course_id).first()


def create(db: Session, student_id: str, course: Course, price) -> Enrollment:
    """
    Record a new enrollment at `price`.

    Free courses start ACTIVE and count towards the course immediately;
    priced courses start PENDING_PAYMENT and are counted on activation.
    """
    free = price is None or price <= 0
    enrollment = Enrollment(
        student_id=student_id,
        course_id=course.id,
        price_paid=price or 0,
        status=EnrollmentStatus.ACTIVE if free else EnrollmentStatus.PENDING_PAYMENT,
        progress_percentage=0,
        videos_completed=False,
        quizzes_completed=False,
        is_completed=False,
    )
    db.add(enrollment)
    db.flush()

    if free:
        _increment_enrollment_count(db, course.id)

    logger.info("Enrollment %s created for student %s in course %s with status %s",
                enrollment.id, student_id, course.id, enrollment.status.value)
    return enrollment


def enroll(db: Session, student_id: str, course_id: str) -> Enrollment:
    """Enroll a student, capturing the course's current price."""
    course = db.get(Course, course_id)
    if course is None:
        raise NotFoundError("Course", "id", course_id)
    if not course.is_published:
        raise ValidationError("This course is not available for enrollment")
    if find_enrollment(db, student_id, course_id) is not None:
        logger.warning("Student %s is already enrolled in course %s", student_id, course_id)
        raise ValidationError("You are already enrolled in this course")

    try:
        enrollment = create(db, student_id, course, course.price)
        db.commit()
    except IntegrityError:
        # concurrent request won the unique (student, course) race
        db.rollback()
        raise ValidationError("You are already enrolled in this course")

    db.refresh(enrollment)
    return enrollment


def activate(db: Session, enrollment_id: str, payment_id: Optional[str]) -> bool:
    """
    Move a PENDING_PAYMENT enrollment to ACTIVE and count it on the course.

    Returns True only when the transition happened. Already ACTIVE/COMPLETED
    is an idempotent no-op; CANCELLED, EXPIRED and SUSPENDED enrollments are
    never re-activated by a payment.
    """
    enrollment = lock_enrollment(db, enrollment_id)

    if enrollment.status in ACCESS_GRANTING:
        logger.info("Enrollment %s already %s, activation skipped", enrollment_id, enrollment.status.value)
        return False
    if enrollment.status != EnrollmentStatus.PENDING_PAYMENT:
        logger.warning("Conflict: refusing to activate enrollment %s in status %s (payment %s)",
                       enrollment_id, enrollment.status.value, payment_id)
        return False

    enrollment.status = EnrollmentStatus.ACTIVE
    enrollment.payment_id = payment_id
    _increment_enrollment_count(db, enrollment.course_id)
    db.flush()

    logger.info("Enrollment %s activated with payment %s", enrollment_id, payment_id)
    return True


def mark_completed(enrollment: Enrollment) -> bool:
    """Finalize a course; False if it was already completed."""
    if enrollment.is_completed:
        return False
    enrollment.mark_completed()
    logger.info("Student %s completed course %s (enrollment %s)",
                enrollment.student_id, enrollment.course_id, enrollment.id)
    return True


def expire_if_due(enrollment: Enrollment, now=None) -> bool:
    if enrollment.status == EnrollmentStatus.ACTIVE and enrollment.is_expired(now):
        enrollment.status = EnrollmentStatus.EXPIRED
        logger.info("Enrollment %s expired at %s", enrollment.id, enrollment.expires_at)
        return True
    return False


def has_access(db: Session, student_id: str, course_id: str) -> bool:
    enrollment = find_enrollment(db, student_id, course_id)
    if enrollment is None:
        return False

    expire_if_due(enrollment)
    accessible = enrollment.is_accessible()
    if accessible:
        enrollment.record_access()
    db.commit()
    return accessible


def suspend(db: Session, enrollment_id: str) -> Enrollment:
    enrollment = lock_enrollment(db, enrollment_id)
    if enrollment.status != EnrollmentStatus.ACTIVE:
        status = enrollment.status.value
        db.rollback()
        raise ConflictError(f"Only active enrollments can be suspended (status: {status})")
    enrollment.status = EnrollmentStatus.SUSPENDED
    db.commit()
    logger.info("Enrollment %s suspended", enrollment_id)
    return enrollment


def resume(db: Session, enrollment_id: str) -> Enrollment:
    enrollment = lock_enrollment(db, enrollment_id)
    if enrollment.status != EnrollmentStatus.SUSPENDED:
        status = enrollment.status.value
        db.rollback()
        raise ConflictError(f"Only suspended enrollments can be resumed (status: {status})")
    enrollment.status = EnrollmentStatus.ACTIVE
    db.commit()
    logger.info("Enrollment %s resumed", enrollment_id)
    return enrollment


def cancel(db: Session, enrollment_id: str) -> Enrollment:
    enrollment = lock_enrollment(db, enrollment_id)
    if enrollment.status != EnrollmentStatus.CANCELLED:
        enrollment.status = EnrollmentStatus.CANCELLED
        logger.info("Enrollment %s cancelled", enrollment_id)
    db.commit()
    return enrollment


def list_student_enrollments(db: Session, student_id: str, active_only: bool = False) -> List[Enrollment]:
    q = db.query(Enrollment).filter(Enrollment.student_id == student_id)
    if active_only:
        q = q.filter(Enrollment.status.in_(ACCESS_GRANTING))
    return q.order_by(Enrollment.created_at.desc()).all()
