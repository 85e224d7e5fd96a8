import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from quizcast.api import admin_billing, billing, credits, documents, health  # noqa: E402
from quizcast.core.config import settings, validate_config  # noqa: E402
from quizcast.core.database import create_all_tables  # noqa: E402
from quizcast.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from quizcast.core.logging import configure_logging  # noqa: E402
from quizcast.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from quizcast.core.validation import validate_env  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("quizcast")
    logger.info("Starting QuizCast backend...")
    if settings.AUTO_CREATE_SCHEMA:
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping QuizCast backend...")


app = FastAPI(title="QuizCast - Backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(credits.router)
app.include_router(documents.router)
app.include_router(billing.router)
app.include_router(admin_billing.router)
