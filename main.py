from __future__ import annotations

import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from database import Base, engine
from routers.auth import router as auth_router
from routers.courses import router as courses_router
from routers.projects import router as projects_router
from routers.users import router as users_router
from utils.otp_service import OtpManager
from utils.rate_limit import limiter


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Project Review Backend")

# Create tables (simple projects; for production use migrations).
Base.metadata.create_all(bind=engine)

# One manager per process; handlers reach it through routers.auth.get_otp_manager.
app.state.otp_manager = OtpManager.from_env()

app.include_router(auth_router, prefix="/api")
app.include_router(users_router, prefix="/api")
app.include_router(courses_router, prefix="/api")
app.include_router(projects_router, prefix="/api")


def _purge_expired_otps() -> int:
    purged = app.state.otp_manager.purge_expired()
    if purged:
        logger.info("Purged %d expired OTP records", purged)
    stale = limiter.purge_stale()
    if stale:
        logger.debug("Dropped %d idle rate-limit keys", stale)
    return purged


@app.on_event("startup")
def _start_scheduler():
    sched = BackgroundScheduler(timezone=os.getenv("TZ", "UTC"))
    sched.add_job(_purge_expired_otps, "interval", minutes=1, id="purge_expired_otps", replace_existing=True)
    sched.start()
    app.state._scheduler = sched


@app.on_event("shutdown")
def _stop_scheduler():
    sched = getattr(app.state, "_scheduler", None)
    if sched:
        sched.shutdown(wait=False)


@app.get("/")
def root():
    return {"status": "Backend running"}
