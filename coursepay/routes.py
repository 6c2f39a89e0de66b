from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from coursepay import enrollments, progress, reconciliation
from coursepay.auth import verify_token
from coursepay.database import get_db
from coursepay.schemas import (
    AccessOut, EnrollRequest, EnrollmentOut, PaymentOut, PaymentRequest, PaymentStatusOut,
    ProgressEvent, QuizAttemptOut, QuizAttemptRequest, StaleSweepOut, VideoPositionRequest,
    VideoProgressOut,
)

router = APIRouter(dependencies=[Depends(verify_token)])


# --- enrollments ---

@router.post("/enrollments", response_model=EnrollmentOut, status_code=201)
def enroll(request: EnrollRequest, db: Session = Depends(get_db)):
    return EnrollmentOut.model_validate(enrollments.enroll(db, request.student_id, request.course_id))


@router.get("/enrollments/access", response_model=AccessOut)
def check_access(student_id: str, course_id: str, db: Session = Depends(get_db)):
    accessible = enrollments.has_access(db, student_id, course_id)
    return AccessOut(student_id=student_id, course_id=course_id, accessible=accessible)


@router.get("/enrollments/{enrollment_id}", response_model=EnrollmentOut)
def get_enrollment(enrollment_id: str, db: Session = Depends(get_db)):
    return EnrollmentOut.model_validate(enrollments.get_enrollment(db, enrollment_id))


@router.get("/students/{student_id}/enrollments", response_model=List[EnrollmentOut])
def student_enrollments(student_id: str, active_only: bool = False, db: Session = Depends(get_db)):
    return [EnrollmentOut.model_validate(e) for e in enrollments.list_student_enrollments(db, student_id, active_only)]


@router.post("/enrollments/{enrollment_id}/suspend", response_model=EnrollmentOut)
def suspend_enrollment(enrollment_id: str, db: Session = Depends(get_db)):
    return EnrollmentOut.model_validate(enrollments.suspend(db, enrollment_id))


@router.post("/enrollments/{enrollment_id}/resume", response_model=EnrollmentOut)
def resume_enrollment(enrollment_id: str, db: Session = Depends(get_db)):
    return EnrollmentOut.model_validate(enrollments.resume(db, enrollment_id))


@router.post("/enrollments/{enrollment_id}/cancel", response_model=EnrollmentOut)
def cancel_enrollment(enrollment_id: str, db: Session = Depends(get_db)):
    return EnrollmentOut.model_validate(enrollments.cancel(db, enrollment_id))


# --- payments ---

@router.post("/payments", response_model=PaymentOut, status_code=201)
def initiate_payment(request: PaymentRequest, db: Session = Depends(get_db)):
    payment = reconciliation.initiate_payment(db, request.enrollment_id, request.phone_number)
    return PaymentOut.from_payment(payment)


@router.get("/payments/status/{transaction_ref}", response_model=PaymentStatusOut)
def payment_status(transaction_ref: str, db: Session = Depends(get_db)):
    return reconciliation.get_status(db, transaction_ref)


@router.get("/payments", response_model=List[PaymentOut])
def list_payments(status: Optional[str] = Query(None), db: Session = Depends(get_db)):
    return [PaymentOut.from_payment(p) for p in reconciliation.list_payments(db, status)]


@router.post("/payments/expire-stale", response_model=StaleSweepOut)
def expire_stale(db: Session = Depends(get_db)):
    return StaleSweepOut(expired=reconciliation.expire_stale_payments(db))


@router.post("/payments/{transaction_ref}/refund", response_model=PaymentOut)
def refund(transaction_ref: str, db: Session = Depends(get_db)):
    return PaymentOut.from_payment(reconciliation.refund_payment(db, transaction_ref))


# --- progress events ---

@router.post("/progress/video", response_model=EnrollmentOut)
def video_progress_changed(event: ProgressEvent, db: Session = Depends(get_db)):
    return EnrollmentOut.model_validate(progress.video_progress_changed(db, event.student_id, event.course_id))


@router.post("/progress/quiz", response_model=EnrollmentOut)
def quiz_passed(event: ProgressEvent, db: Session = Depends(get_db)):
    return EnrollmentOut.model_validate(progress.quiz_passed(db, event.student_id, event.course_id))


@router.post("/progress/video-position", response_model=VideoProgressOut)
def video_position(request: VideoPositionRequest, db: Session = Depends(get_db)):
    video_progress = progress.record_video_position(db, request.student_id, request.video_id, request.position_seconds)
    return VideoProgressOut.model_validate(video_progress)


@router.post("/progress/quiz-attempt", response_model=QuizAttemptOut, status_code=201)
def quiz_attempt(request: QuizAttemptRequest, db: Session = Depends(get_db)):
    return QuizAttemptOut.model_validate(progress.record_quiz_attempt(db, request.student_id, request.quiz_id, request.score))
