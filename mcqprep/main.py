"""
mcqprep billing service: subscriptions, payment fulfillment, daily rewards.

Run with: uvicorn mcqprep.main:app --port 8000
"""
import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from mcqprep.api import admin_subscriptions, billing, health, metrics, rewards
from mcqprep.core.config import settings, validate_config
from mcqprep.core.database import create_all_tables
from mcqprep.core.errors import AppError, app_error_handler, http_error_handler, unhandled_exception_handler
from mcqprep.core.logging import configure_logging
from mcqprep.core.middleware.metrics import MetricsMiddleware
from mcqprep.core.middleware.request_id import RequestIdMiddleware
from mcqprep.core.validation import validate_env
from mcqprep.features.fulfillment.service import close_providers

logger = logging.getLogger("mcqprep")

ROUTERS = (health.router, metrics.router, billing.router, rewards.router, admin_subscriptions.router)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.startup_time = time.time()
    create_all_tables()
    logger.info(f"mcqprep started (env={settings.ENV})")
    yield
    close_providers()
    logger.info("mcqprep stopped")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_env()
    validate_config()

    app = FastAPI(title="mcqprep - subscriptions & fulfillment", lifespan=lifespan)

    # Outermost first: CORS, then request id, then metrics
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in ROUTERS:
        app.include_router(router)
    return app


app = create_app()
