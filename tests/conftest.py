import threading
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from coursepay.auth import verify_token
from coursepay.database import Base, get_db
from coursepay.gateway import GatewayResponse
from coursepay.main import app as fastapi_app
from coursepay.models import Course, Enrollment, EnrollmentStatus, Quiz, Video

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
# writers on other threads wait for the database lock instead of failing
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False, "timeout": 15})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    fastapi_app.dependency_overrides[get_db] = override_get_db
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[verify_token] = lambda: {"sub": "test"}
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def run_concurrently():
    """Run each callable on its own thread with its own session; return results in order."""
    def _run(*calls):
        results = [None] * len(calls)
        errors = []

        def worker(index, call):
            session = TestingSessionLocal()
            try:
                results[index] = call(session)
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        if errors:
            raise errors[0]
        return results
    return _run


@pytest.fixture
def auth_client(monkeypatch):
    # real token verification, test database
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    fastapi_app.dependency_overrides[get_db] = override_get_db
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def make_course(db):
    def _make(price="2999.00", published=True, videos=0, quizzes=0, title="Intro to Python"):
        course = Course(title=title, price=Decimal(price), is_published=published, enrollment_count=0)
        db.add(course)
        db.flush()
        for i in range(videos):
            db.add(Video(course_id=course.id, title=f"Lesson {i + 1}", duration_seconds=600, is_published=True))
        for i in range(quizzes):
            db.add(Quiz(course_id=course.id, title=f"Quiz {i + 1}", is_required=True, passing_score=70))
        db.commit()
        return course
    return _make


@pytest.fixture
def make_enrollment(db):
    """Insert an enrollment directly, bypassing enroll(), in any status."""
    def _make(course, student_id="student-1", status=EnrollmentStatus.ACTIVE, expires_at=None):
        enrollment = Enrollment(
            student_id=student_id,
            course_id=course.id,
            price_paid=course.price,
            status=status,
            progress_percentage=0,
            videos_completed=False,
            quizzes_completed=False,
            is_completed=False,
            expires_at=expires_at,
        )
        db.add(enrollment)
        db.commit()
        return enrollment
    return _make


@pytest.fixture
def stk_push(mocker):
    """Gateway accepts every push; the mock records what was sent."""
    return mocker.patch(
        "coursepay.reconciliation.initiate_stk_push",
        return_value=GatewayResponse(checkout_request_id="ws_CO_191020261200001", message="QUEUED"),
    )


@pytest.fixture
def callback_payload():
    def _make(reference, checkout_request_id="ws_CO_191020261200001", result_code=0,
              result_desc="The service request is processed successfully.",
              amount=2999, receipt="SJK7Q1XYZ0"):
        return {
            "status": result_code == 0,
            "response": {
                "Amount": amount,
                "CheckoutRequestID": checkout_request_id,
                "ExternalReference": reference,
                "MerchantRequestID": "2201-4d1b-9a3c",
                "MpesaReceiptNumber": receipt if result_code == 0 else "",
                "Phone": "+254712345678",
                "ResultCode": result_code,
                "ResultDesc": result_desc,
                "Status": "Success" if result_code == 0 else "Failed",
            },
        }
    return _make
