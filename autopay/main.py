import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from autopay.core.config import cors_origins, settings, validate_config
from autopay.core.logging import configure_logging
from autopay.core.middleware.request_id import RequestIdMiddleware
from autopay.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from autopay.api import dashboard, health, plan_tier, plans, subscriptions

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("autopay")
    logger.info("Starting AutoPay backend...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("autopay").info("Stopping AutoPay backend...")


app = FastAPI(title="AutoPay Vault - Backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions.router, prefix="/api")
app.include_router(dashboard.router, prefix="/api")
app.include_router(plans.router, prefix="/api")
app.include_router(plan_tier.router, prefix="/api")
app.include_router(health.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("autopay.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
