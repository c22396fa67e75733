"""Liveness and readiness checks (no secrets exposed)."""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from mcqprep.core.database import check_connection, get_engine

logger = logging.getLogger("mcqprep")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "profiles",
    "subscription_tiers",
    "user_subscriptions",
    "reward_ledger",
    "billing_events",
]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + ledger tables."""
    computed_at = datetime.now(timezone.utc).isoformat()
    if not check_connection():
        return JSONResponse(
            status_code=503,
            content={"ok": False, "db": {"connected": False}, "computed_at": computed_at},
        )
    present = set(inspect(get_engine()).get_table_names())
    missing = [name for name in REQUIRED_TABLES if name not in present]
    if missing:
        logger.warning(f"readyz: missing tables {missing}")
    return JSONResponse(
        status_code=200 if not missing else 503,
        content={
            "ok": not missing,
            "db": {"connected": True, "missing_tables": missing},
            "computed_at": computed_at,
        },
    )
