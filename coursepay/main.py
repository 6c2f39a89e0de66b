import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from coursepay import reconciliation
from coursepay.config import LOG_LEVEL
from coursepay.database import Base, engine, get_db
from coursepay.exceptions import CoursePayError
from coursepay.routes import router

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Course Enrollment & Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(CoursePayError)
async def coursepay_error_handler(request: Request, exc: CoursePayError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.post("/payments/callback")
async def payment_callback(request: Request, db: Session = Depends(get_db)):
    # public webhook: always acknowledge so the gateway never retries
    try:
        payload = await request.json()
    except ValueError:
        logger.error("Payment callback with unparseable body discarded")
        return {"ok": True}

    logger.info("Received payment callback")
    logger.debug("Callback data: %s", payload)
    # blocking database work stays off the event loop
    await run_in_threadpool(reconciliation.process_callback, db, payload)
    return {"ok": True}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}
