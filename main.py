from __future__ import annotations

import logging
import os
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from database import Base, SessionLocal, engine
from routers.otp import body_error_handler, router as otp_router
from utils.identity import LocalIdentityService
from utils.mailer import build_mailer
from utils.otp_store import build_store


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

OTP_PURGE_MINUTES = int(os.getenv("OTP_PURGE_MINUTES", "30"))

app = FastAPI(title="Whisp OTP")

# Create tables (simple projects; for production use migrations).
Base.metadata.create_all(bind=engine)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(otp_router)
app.add_exception_handler(RequestValidationError, body_error_handler)


def _purge_expired_otps() -> int:
    """Drop OTP records past their expiry that nobody came back to verify."""
    deleted = app.state.otp_store.purge_expired(datetime.utcnow())
    if deleted:
        logger.info("Purged %s expired OTP records", deleted)
    return deleted


@app.on_event("startup")
def _startup():
    # Collaborators live for the whole process and are handed to each request.
    app.state.otp_store = build_store(SessionLocal)
    app.state.mailer = build_mailer()
    app.state.identity = LocalIdentityService(SessionLocal)

    sched = BackgroundScheduler(timezone=os.getenv("TZ", "UTC"))
    sched.add_job(_purge_expired_otps, "interval", minutes=OTP_PURGE_MINUTES, id="purge_expired_otps", replace_existing=True)
    sched.start()
    app.state._scheduler = sched


@app.on_event("shutdown")
def _shutdown():
    sched = getattr(app.state, "_scheduler", None)
    if sched:
        sched.shutdown(wait=False)


@app.get("/health")
def health():
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    logger.info("OTP server listening on :%s", port)
    uvicorn.run("main:app", host="0.0.0.0", port=port)
