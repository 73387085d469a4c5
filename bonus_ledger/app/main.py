import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api.exceptions import register_exception_handlers
from .api.routes import router as user_router
from .core import db
from .core.config import Settings, get_settings
from .services import AccrualClient, ReconciliationWorker

settings = get_settings()
logging.basicConfig(level=settings.log_level)

def build_worker(settings: Settings) -> Optional[ReconciliationWorker]:
    if not settings.accrual_system_address:
        return None
    client = AccrualClient(
        settings.accrual_system_address,
        attempts=settings.accrual_attempts,
        rate_limit_pause=settings.accrual_rate_limit_pause_seconds,
        backoff_step=settings.accrual_backoff_step_seconds,
        timeout=settings.accrual_timeout_seconds,
    )
    return ReconciliationWorker(
        db.new_session,
        client,
        batch_size=settings.rows_per_cycle,
        interval=settings.reconcile_interval_seconds,
        lease_seconds=settings.claim_lease_seconds,
    )

@asynccontextmanager
async def lifespan(app: FastAPI):
    db.init_db()
    worker = build_worker(settings)
    if worker is not None:
        worker.start()
    app.state.worker = worker
    yield
    if worker is not None:
        worker.stop(timeout=settings.accrual_timeout_seconds * 2)

app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.include_router(user_router)
register_exception_handlers(app)

@app.get("/health")
def read_health() -> dict[str, str]:
    return {"status": "ok"}
