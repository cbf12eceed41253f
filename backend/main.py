from contextlib import asynccontextmanager
import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from marketplace.db.config import get_reservation_sweep_interval_seconds
from marketplace.jobs.reservation_sweep import run_reservation_sweep_job
from marketplace.routes.admin_r import router as admin_router
from marketplace.routes.payments_r import router as payments_router
from marketplace.routes.reservations_r import router as reservations_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

RESERVATION_SWEEP_JOB_ID = "reservation_sweep"


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    interval = get_reservation_sweep_interval_seconds()
    if interval > 0:
        scheduler = BackgroundScheduler()
        scheduler.add_job(
            run_reservation_sweep_job,
            "interval",
            seconds=interval,
            id=RESERVATION_SWEEP_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        logger.info("event=scheduler_started job=%s interval_seconds=%s", RESERVATION_SWEEP_JOB_ID, interval)
    else:
        logger.info("event=scheduler_disabled job=%s", RESERVATION_SWEEP_JOB_ID)
    app.state.scheduler = scheduler
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)


app = FastAPI(
    title="Reservations API",
    version="0.1.0",
    description="Reservation and settlement engine for marketplace offerings.",
    lifespan=lifespan,
)

app.include_router(reservations_router)
app.include_router(payments_router)
app.include_router(admin_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
