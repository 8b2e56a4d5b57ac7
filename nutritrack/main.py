import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from the project root before settings are read
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(project_dir, ".env"))

from nutritrack.core.config import Settings, settings, validate_config
from nutritrack.core.database import create_all_tables, init_engine, new_session
from nutritrack.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from nutritrack.core.logging import configure_logging
from nutritrack.core.rate_limit import FixedWindowLimiter
from nutritrack.core.middleware.request_id import RequestIdMiddleware
from nutritrack.core.validation import validate_env
from nutritrack.api import billing, health, subscription, users
from nutritrack.features.billing.provider import BillingProvider
from nutritrack.features.billing.stripe_provider import StripeProvider
from nutritrack.features.users.store import UserStore


def build_provider(cfg: Settings) -> Optional[BillingProvider]:
    """Stripe provider from settings, or None when billing is disabled."""
    if not cfg.billing_enabled:
        return None
    return StripeProvider(
        secret_key=cfg.STRIPE_SECRET_KEY,
        webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
        price_id=cfg.STRIPE_PRICE_ID,
        webhook_tolerance=cfg.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("nutritrack")
    logger.info("Starting nutritrack backend...")
    app.state.startup_time = time.time()
    engine = app.state.engine
    if engine is None and app.state.settings.DATABASE_URL:
        engine = app.state.engine = init_engine(app.state.settings.DATABASE_URL)
    if engine is not None:
        create_all_tables(engine)
    else:
        logger.warning("DATABASE_URL not configured; user store unavailable")
    try:
        yield
    finally:
        logging.getLogger("nutritrack").info("Stopping nutritrack backend...")


def create_app(
    settings_obj: Optional[Settings] = None,
    provider: Optional[BillingProvider] = None,
    store: Optional[UserStore] = None,
    engine=None,
) -> FastAPI:
    """
    Build the API.

    Args:
        settings_obj: configuration (defaults to env/.env settings)
        provider: billing provider; built from settings when omitted
        store: user store; defaults to one over the global engine (opened lazily)
        engine: engine probed by /readyz; defaults to the global engine
    """
    cfg = settings_obj or settings

    configure_logging(cfg.ENV)
    validate_env(settings_obj=cfg)
    validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)

    app = FastAPI(title="nutritrack - Backend", lifespan=lifespan)
    app.state.settings = cfg
    app.state.provider = provider if provider is not None else build_provider(cfg)
    app.state.store = store or UserStore(new_session)
    app.state.engine = engine
    app.state.reconcile_limiter = FixedWindowLimiter(cfg.RECONCILE_FORCE_LIMIT_PER_MINUTE)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(subscription.router, prefix="/api", tags=["subscription"])
    app.include_router(users.router, prefix="/api", tags=["users"])
    app.include_router(health.root_router, tags=["health"])

    return app


app = create_app()
