import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from billing_backend import app_context
from billing_backend.app.billing import User
from billing_backend.app.routes.billing import router as billing_router
from billing_backend.app.services.billing import connect, get_billing_engines
from billing_backend.config import load_billing_config
from billing_backend.scheduler import (
    get_sweep_metrics,
    shutdown_overdue_sweeper,
    start_overdue_sweeper,
)

load_dotenv()

BILLING_CONFIG = load_billing_config()

logger = logging.getLogger("billing")


def get_conn():
    return connect(BILLING_CONFIG.database)


def get_current_user(user_id: Optional[str] = None) -> User:
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    user = get_billing_engines().users.get_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return user


app_context.configure(get_conn=get_conn, get_current_user=get_current_user)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    engines = get_billing_engines()
    engines.notifier.start()
    start_overdue_sweeper(
        BILLING_CONFIG.overdue_sweep_interval_seconds,
        engine=engines.invoices,
        initial_delay=min(60.0, BILLING_CONFIG.overdue_sweep_interval_seconds),
    )
    logger.info("Billing workers started", extra={"store": BILLING_CONFIG.store_backend})
    try:
        yield
    finally:
        shutdown_overdue_sweeper()
        engines.notifier.close()


app = FastAPI(title="Subscription Billing API", lifespan=lifespan)

# Vite proxy origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)


@app.get("/api/health")
def health() -> Dict[str, Any]:
    engines = get_billing_engines()
    return {
        "status": "ok",
        "store": BILLING_CONFIG.store_backend,
        "active_subscriptions": engines.subscriptions.count_active(),
        "notifications": engines.notifier.stats(),
        "overdue_sweep": get_sweep_metrics(),
    }


# run: uvicorn billing_backend.main:app --host 127.0.0.1 --port 8000 --reload
