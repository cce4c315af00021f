"""FastAPI application for the Payments Service."""

from fastapi import FastAPI
from libs.common.middleware import add_observability_middleware
from services.payments_service.routers import internal_router, webhooks_router


def create_app() -> FastAPI:
    """Create and configure the Payments Service FastAPI app."""
    app = FastAPI(
        title="Payment Settlement Service",
        version="0.1.0",
        description="Mercado Pago settlement and stock reconciliation.",
    )

    add_observability_middleware(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "payments"}

    app.include_router(webhooks_router)
    app.include_router(internal_router)

    return app


app = create_app()
