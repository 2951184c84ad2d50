# fuep_payments/main.py

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# ---------------------------------------------
# LOAD ENVIRONMENT VARIABLES
# ---------------------------------------------
load_dotenv()

from fuep_payments.config import Settings, settings as default_settings
from fuep_payments.db import SessionLocal
from fuep_payments.logging_config import get_logger
from fuep_payments.middleware import request_id_middleware
from fuep_payments.psp.registry import ProviderRegistry, build_registry
from fuep_payments.services.receipt_service import ReceiptGenerator
from fuep_payments.services.settlement import SettlementListener, build_listener
from fuep_payments.services.webhook_verifier import WebhookVerifier

# ---------------------------------------------
# IMPORT ROUTERS
# ---------------------------------------------
from fuep_payments.routers import health, payments, webhooks

logger = get_logger(__name__)


def create_app(
    settings: Settings = None,
    registry: ProviderRegistry = None,
    listener: SettlementListener = None,
    session_factory=None,
) -> FastAPI:
    settings = settings or default_settings

    app = FastAPI(
        title="FUEP Payments API",
        version=settings.APP_VERSION,
    )

    # ---------------------------------------------
    # SHARED STATE
    # ---------------------------------------------
    app.state.settings = settings
    app.state.registry = registry if registry is not None else build_registry(settings)
    app.state.listener = listener or build_listener(settings)
    app.state.verifier = WebhookVerifier(tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS)
    app.state.receipts = ReceiptGenerator.from_settings(settings)
    app.state.session_factory = session_factory or SessionLocal

    # ---------------------------------------------
    # MIDDLEWARE
    # ---------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_id_middleware)

    # ---------------------------------------------
    # ROUTERS
    # ---------------------------------------------
    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(payments.router, prefix="/payments", tags=["Payments"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])

    @app.get("/")
    def root():
        return {"message": f"{settings.APP_NAME} is running"}

    logger.info("app_started", environment=settings.ENVIRONMENT, providers=app.state.registry.status())
    return app


app = create_app()
