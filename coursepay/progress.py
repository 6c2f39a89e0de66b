"""
Progress aggregator.

Video watch-through and quiz passes arrive independently and in any order.
Every event recomputes both completion flags from the durable progress rows
(never from counters carried on the enrollment), so the last event to commit
always sees the other subsystem's work and completion happens exactly once.
"""
import logging

from sqlalchemy import distinct, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursepay import config, enrollments
from coursepay.exceptions import ForbiddenError, NotFoundError
from coursepay.models import (
    Enrollment, EnrollmentStatus, Quiz, QuizAttempt, Video, VideoProgress
)

logger = logging.getLogger(__name__)


def _count_videos(db: Session, enrollment: Enrollment):
    total = (
        db.query(func.count(Video.id))
        .filter(Video.course_id == enrollment.course_id, Video.is_published.is_(True))
        .scalar()
    )
    completed = (
        db.query(func.count(distinct(VideoProgress.video_id)))
        .join(Video, Video.id == VideoProgress.video_id)
        .filter(
            VideoProgress.enrollment_id == enrollment.id,
            VideoProgress.is_completed.is_(True),
            Video.course_id == enrollment.course_id,
            Video.is_published.is_(True),
        )
        .scalar()
    )
    return completed or 0, total or 0


def _count_quizzes(db: Session, enrollment: Enrollment):
    required = (
        db.query(func.count(Quiz.id))
        .filter(Quiz.course_id == enrollment.course_id, Quiz.is_required.is_(True))
        .scalar()
    )
    passed = (
        db.query(func.count(distinct(QuizAttempt.quiz_id)))
        .join(Quiz, Quiz.id == QuizAttempt.quiz_id)
        .filter(
            QuizAttempt.enrollment_id == enrollment.id,
            QuizAttempt.is_passed.is_(True),
            Quiz.course_id == enrollment.course_id,
            Quiz.is_required.is_(True),
        )
        .scalar()
    )
    return passed or 0, required or 0


def _recompute(db: Session, enrollment: Enrollment, trigger: str) -> Enrollment:
    db.flush()
    enrollment = enrollments.lock_enrollment(db, enrollment.id)
    if enrollment.is_completed:
        return enrollment

    completed_videos, total_videos = _count_videos(db, enrollment)
    passed_quizzes, required_quizzes = _count_quizzes(db, enrollment)

    enrollment.videos_completed = total_videos > 0 and completed_videos >= total_videos
    # no required quizzes means nothing to pass
    enrollment.quizzes_completed = passed_quizzes >= required_quizzes
    if total_videos > 0:
        enrollment.update_progress(completed_videos * 100 // total_videos)

    logger.debug("Enrollment %s after %s: videos %d/%d, quizzes %d/%d",
                 enrollment.id, trigger, completed_videos, total_videos, passed_quizzes, required_quizzes)

    if enrollment.videos_completed and enrollment.quizzes_completed:
        if enrollment.status == EnrollmentStatus.ACTIVE:
            enrollments.mark_completed(enrollment)
        else:
            logger.warning("Enrollment %s meets completion but is %s; not completing",
                           enrollment.id, enrollment.status.value)
    db.flush()
    return enrollment


def on_video_progress_update(db: Session, enrollment: Enrollment) -> Enrollment:
    return _recompute(db, enrollment, "video progress")


def on_quiz_passed(db: Session, enrollment: Enrollment) -> Enrollment:
    return _recompute(db, enrollment, "quiz pass")


def _enrollment_for(db: Session, student_id: str, course_id: str) -> Enrollment:
    enrollment = enrollments.find_enrollment(db, student_id, course_id)
    if enrollment is None:
        raise NotFoundError("Enrollment", "student/course", f"{student_id}/{course_id}")
    return enrollment


def video_progress_changed(db: Session, student_id: str, course_id: str) -> Enrollment:
    enrollment = on_video_progress_update(db, _enrollment_for(db, student_id, course_id))
    db.commit()
    return enrollment


def quiz_passed(db: Session, student_id: str, course_id: str) -> Enrollment:
    enrollment = on_quiz_passed(db, _enrollment_for(db, student_id, course_id))
    db.commit()
    return enrollment


def _accessible_enrollment(db: Session, student_id: str, course_id: str) -> Enrollment:
    enrollment = enrollments.find_enrollment(db, student_id, course_id)
    if enrollment is None or not enrollment.is_accessible():
        raise ForbiddenError()
    return enrollment


def _find_video_progress(db: Session, enrollment_id: str, video_id: str):
    return db.query(VideoProgress).filter_by(enrollment_id=enrollment_id, video_id=video_id).first()


def record_video_position(db: Session, student_id: str, video_id: str, position_seconds: int) -> VideoProgress:
    """Store the student's playback position and fold it into course progress."""
    video = db.get(Video, video_id)
    if video is None:
        raise NotFoundError("Video", "id", video_id)
    enrollment = _accessible_enrollment(db, student_id, video.course_id)

    progress = _find_video_progress(db, enrollment.id, video_id)
    if progress is None:
        progress = VideoProgress(
            enrollment_id=enrollment.id,
            student_id=student_id,
            course_id=video.course_id,
            video_id=video_id,
            last_position_seconds=0,
            progress_percentage=0,
            is_completed=False,
        )
        db.add(progress)
        try:
            db.flush()
        except IntegrityError:
            # another first-watch event for this video inserted the row
            db.rollback()
            progress = _find_video_progress(db, enrollment.id, video_id)

    progress.update_position(position_seconds, video.duration_seconds, config.VIDEO_COMPLETION_THRESHOLD)
    on_video_progress_update(db, enrollment)
    db.commit()
    return progress


def record_quiz_attempt(db: Session, student_id: str, quiz_id: str, score: int) -> QuizAttempt:
    """Store an already-graded attempt; a pass feeds the aggregator."""
    quiz = db.get(Quiz, quiz_id)
    if quiz is None:
        raise NotFoundError("Quiz", "id", quiz_id)
    enrollment = _accessible_enrollment(db, student_id, quiz.course_id)

    attempt = QuizAttempt(
        enrollment_id=enrollment.id,
        student_id=student_id,
        quiz_id=quiz_id,
        score=score,
        is_passed=score >= quiz.passing_score,
    )
    db.add(attempt)

    if attempt.is_passed:
        on_quiz_passed(db, enrollment)
    db.commit()

    logger.info("Quiz attempt by %s on %s: score=%s passed=%s", student_id, quiz_id, score, attempt.is_passed)
    return attempt
