import uvicorn
from fastapi import FastAPI

from app.api.routes.health import router as health_router
from app.api.routes.internal_billing import router as internal_billing_router
from app.api.routes.payment_webhooks import router as payment_webhooks_router
from app.core.config import get_settings
from app.core.logging import configure_logging


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    docs_enabled = bool(getattr(settings, "enable_openapi_docs", True))
    app = FastAPI(
        title="Billing Engine API",
        version="0.1.0",
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.include_router(health_router)
    app.include_router(payment_webhooks_router)
    app.include_router(internal_billing_router)
    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_env == "dev",
    )


if __name__ == "__main__":
    run()
