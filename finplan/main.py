import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from finplan.core.config import cors_origins, settings, validate_config
from finplan.core.database import create_all_tables
from finplan.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from finplan.core.logging import configure_logging
from finplan.core.middleware.request_id import RequestIdMiddleware
from finplan.api import health, resources, subscriptions, usage


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("finplan")
    logger.info("Starting finplan API...")
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping finplan API...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="finplan - subscriptions & quotas", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(subscriptions.router)
    app.include_router(usage.router)
    app.include_router(resources.wallets_router)
    app.include_router(resources.accounts_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("finplan.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
