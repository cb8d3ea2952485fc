import json
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from sendly.core.config import Settings, load_settings
from sendly.core.deps import get_database, get_settings
from sendly.core.observability import (
    install_error_handlers,
    logger,
    request_logging_middleware,
    setup_observability,
)
from sendly.db.session import Database
from sendly.routers import billing, campaigns, messages, webhooks
from sendly.services.container import build_services
from sendly.services.messaging_provider import SmsProvider
from sendly.services.payment_provider import PaymentProvider


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    *,
    sms_provider: SmsProvider | None = None,
    payment_provider: PaymentProvider | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    owns_database = database is None
    database = database or Database.from_settings(settings)
    services = build_services(
        settings,
        database,
        sms_provider=sms_provider,
        payment_provider=payment_provider,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(json.dumps({"event": "startup", "app": settings.app_name, "env": settings.env}))
        yield
        if owns_database:
            database.dispose()
        logger.info(json.dumps({"event": "shutdown", "app": settings.app_name}))

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        description=(
            "SMS marketing backend for Shopify merchants.\n\n"
            "Authenticate with a Shopify session token (`Authorization: Bearer ...`) "
            "or, outside production, the `X-Shopify-Shop-Domain` header."
        ),
        swagger_ui_parameters={
            "persistAuthorization": True,
            "displayRequestDuration": True,
            "defaultModelsExpandDepth": 1,
        },
        openapi_tags=[
            {"name": "health", "description": "Service status and quick links."},
            {"name": "billing", "description": "Credit balance, packages, purchases and ledger history."},
            {"name": "campaigns", "description": "Campaign drafts, send preparation, sending and metrics."},
            {"name": "messages", "description": "Single transactional SMS."},
            {"name": "webhooks", "description": "Stripe payment events and Mitto delivery reports."},
        ],
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.services = services

    setup_observability()
    app.middleware("http")(request_logging_middleware)
    install_error_handlers(app)

    cors_origins = settings.cors_origins or ["http://localhost:3000"]
    allow_all_origins = "*" in cors_origins
    env_value = settings.env.lower().strip()
    allow_origin_regex = settings.cors_origin_regex

    if (
        not allow_origin_regex
        and env_value in {"dev", "development", "staging", "stage"}
    ):
        # Local admin UIs run on dynamic localhost ports.
        allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all_origins else cors_origins,
        allow_origin_regex=allow_origin_regex,
        allow_credentials=not allow_all_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(billing.router)
    app.include_router(campaigns.router)
    app.include_router(messages.router)
    app.include_router(webhooks.router)

    @app.get("/", tags=["health"])
    def root(settings: Settings = Depends(get_settings)):
        return {
            "app": settings.app_name,
            "docs": "/docs",
            "redoc": "/redoc",
            "health": "/health",
            "ready": "/ready",
        }

    @app.get("/health", tags=["health"])
    def health():
        return {"ok": True}

    @app.get("/ready", tags=["health"])
    def ready(database: Database = Depends(get_database)):
        try:
            database.ping()
        except SQLAlchemyError:
            return {"ok": False}
        return {"ok": True}

    return app
