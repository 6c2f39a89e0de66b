from datetime import timedelta
from decimal import Decimal

import pytest

from coursepay import enrollments
from coursepay.exceptions import ConflictError, NotFoundError, ValidationError
from coursepay.models import Course, EnrollmentStatus, utcnow


def test_free_course_enrollment_is_active_immediately(db, make_course):
    course = make_course(price="0")

    enrollment = enrollments.enroll(db, "student-1", course.id)

    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.price_paid == Decimal("0")
    db.expire_all()
    assert db.get(Course, course.id).enrollment_count == 1


def test_paid_course_enrollment_waits_for_payment(db, make_course):
    course = make_course(price="2999.00")

    enrollment = enrollments.enroll(db, "student-1", course.id)

    assert enrollment.status == EnrollmentStatus.PENDING_PAYMENT
    assert enrollment.price_paid == Decimal("2999.00")
    assert enrollment.payment_id is None
    assert not enrollment.is_accessible()
    db.expire_all()
    assert db.get(Course, course.id).enrollment_count == 0


def test_price_is_captured_at_enrollment(db, make_course):
    course = make_course(price="2999.00")
    enrollment = enrollments.enroll(db, "student-1", course.id)

    course.price = Decimal("4999.00")
    db.commit()

    db.expire_all()
    assert enrollments.get_enrollment(db, enrollment.id).price_paid == Decimal("2999.00")


def test_enroll_twice_is_rejected(db, make_course):
    course = make_course()
    enrollments.enroll(db, "student-1", course.id)

    with pytest.raises(ValidationError) as exc:
        enrollments.enroll(db, "student-1", course.id)
    assert exc.value.message == "You are already enrolled in this course"


def test_enroll_in_unpublished_course_is_rejected(db, make_course):
    course = make_course(published=False)

    with pytest.raises(ValidationError):
        enrollments.enroll(db, "student-1", course.id)


def test_enroll_in_unknown_course(db):
    with pytest.raises(NotFoundError) as exc:
        enrollments.enroll(db, "student-1", "no-such-course")
    assert exc.value.status_code == 404


def test_activate_counts_the_enrollment_once(db, make_course):
    course = make_course()
    enrollment = enrollments.enroll(db, "student-1", course.id)

    assert enrollments.activate(db, enrollment.id, "payment-1") is True
    db.commit()
    # repeated activation, e.g. a second success signal
    assert enrollments.activate(db, enrollment.id, "payment-1") is False
    db.commit()

    db.expire_all()
    stored = enrollments.get_enrollment(db, enrollment.id)
    assert stored.status == EnrollmentStatus.ACTIVE
    assert stored.payment_id == "payment-1"
    assert db.get(Course, course.id).enrollment_count == 1


def test_activate_unknown_enrollment(db):
    with pytest.raises(NotFoundError):
        enrollments.activate(db, "missing", "payment-1")


@pytest.mark.parametrize("status", [
    EnrollmentStatus.CANCELLED,
    EnrollmentStatus.EXPIRED,
    EnrollmentStatus.SUSPENDED,
])
def test_activate_never_revives_closed_enrollments(db, make_course, make_enrollment, status):
    course = make_course()
    enrollment = make_enrollment(course, status=status)

    assert enrollments.activate(db, enrollment.id, "payment-1") is False
    db.commit()

    db.expire_all()
    assert enrollments.get_enrollment(db, enrollment.id).status == status
    assert db.get(Course, course.id).enrollment_count == 0


@pytest.mark.parametrize("status, expired, accessible", [
    (EnrollmentStatus.PENDING_PAYMENT, False, False),
    (EnrollmentStatus.ACTIVE, False, True),
    (EnrollmentStatus.COMPLETED, False, True),
    (EnrollmentStatus.SUSPENDED, False, False),
    (EnrollmentStatus.CANCELLED, False, False),
    (EnrollmentStatus.EXPIRED, False, False),
    (EnrollmentStatus.ACTIVE, True, False),
    (EnrollmentStatus.COMPLETED, True, False),
])
def test_access_follows_status_and_expiry(db, make_course, make_enrollment, status, expired, accessible):
    course = make_course()
    expires_at = utcnow() - timedelta(days=1) if expired else utcnow() + timedelta(days=30)
    make_enrollment(course, status=status, expires_at=expires_at)

    assert enrollments.has_access(db, "student-1", course.id) is accessible


def test_no_enrollment_means_no_access(db, make_course):
    course = make_course()
    assert enrollments.has_access(db, "stranger", course.id) is False


def test_access_check_expires_overdue_enrollment(db, make_course, make_enrollment):
    course = make_course()
    enrollment = make_enrollment(course, expires_at=utcnow() - timedelta(minutes=1))

    assert enrollments.has_access(db, "student-1", course.id) is False

    db.expire_all()
    assert enrollments.get_enrollment(db, enrollment.id).status == EnrollmentStatus.EXPIRED


def test_access_check_records_last_access(db, make_course, make_enrollment):
    course = make_course()
    enrollment = make_enrollment(course)

    enrollments.has_access(db, "student-1", course.id)

    db.expire_all()
    assert enrollments.get_enrollment(db, enrollment.id).last_accessed_at is not None


def test_suspend_and_resume(db, make_course, make_enrollment):
    course = make_course()
    enrollment = make_enrollment(course)

    enrollments.suspend(db, enrollment.id)
    assert enrollments.has_access(db, "student-1", course.id) is False

    enrollments.resume(db, enrollment.id)
    assert enrollments.has_access(db, "student-1", course.id) is True


def test_resume_requires_suspended_enrollment(db, make_course, make_enrollment):
    course = make_course()
    enrollment = make_enrollment(course)

    with pytest.raises(ConflictError):
        enrollments.resume(db, enrollment.id)


def test_cancel_revokes_access(db, make_course, make_enrollment):
    course = make_course()
    enrollment = make_enrollment(course)

    enrollments.cancel(db, enrollment.id)

    assert enrollments.has_access(db, "student-1", course.id) is False


def test_mark_completed_requires_both_flags(db, make_course, make_enrollment):
    course = make_course()
    enrollment = make_enrollment(course)
    enrollment.videos_completed = True

    with pytest.raises(ConflictError):
        enrollments.mark_completed(enrollment)

    enrollment.quizzes_completed = True
    assert enrollments.mark_completed(enrollment) is True
    assert enrollment.status == EnrollmentStatus.COMPLETED
    assert enrollment.progress_percentage == 100
    assert enrollment.completed_at is not None
    # second completion is a no-op
    assert enrollments.mark_completed(enrollment) is False


def test_list_student_enrollments(db, make_course, make_enrollment):
    first = make_course(title="Python")
    second = make_course(title="Django")
    make_enrollment(first, status=EnrollmentStatus.ACTIVE)
    make_enrollment(second, status=EnrollmentStatus.PENDING_PAYMENT)

    assert len(enrollments.list_student_enrollments(db, "student-1")) == 2
    active = enrollments.list_student_enrollments(db, "student-1", active_only=True)
    assert [e.course_id for e in active] == [first.id]
