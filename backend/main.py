"""
FastAPI application entry point for the integration credential API.

Multi-tenant enforcement is enabled via TenantContextMiddleware.
All /api routes require a valid JWT with tenant context.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.api.routes import integrations
from src.credentials.cipher import get_cipher_envelope
from src.credentials.errors import EncryptionNotConfiguredError
from src.credentials.redaction import setup_credential_logging
from src.platform.errors import ErrorHandlerMiddleware, register_error_handlers
from src.platform.tenant_context import TenantContextMiddleware

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting integration credential API")
    setup_credential_logging()

    cipher = get_cipher_envelope()
    if not cipher.is_encryption_enabled() and not cipher.config.allows_plaintext_storage:
        # Reads still work for legacy plaintext; every credential write will fail closed
        logger.error(
            "ENCRYPTION_KEY is not set in production; credential writes are disabled",
            extra={"error_code": EncryptionNotConfiguredError.error_code},
        )

    yield

    logger.info("Shutting down integration credential API")


def create_app() -> FastAPI:
    app = FastAPI(title="Integration Credential API", lifespan=lifespan)

    register_error_handlers(app)
    app.add_middleware(TenantContextMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)

    app.include_router(integrations.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
