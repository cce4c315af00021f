"""FastAPI application for the Store Service."""

from fastapi import FastAPI
from libs.common.middleware import add_observability_middleware
from services.store_service.routers import admin_inventory_router


def create_app() -> FastAPI:
    """Create and configure the Store Service FastAPI app."""
    app = FastAPI(
        title="Store Service",
        version="0.1.0",
        description="Product stock and the stock audit ledger.",
    )

    add_observability_middleware(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "store"}

    # Admin routes (inventory and stock ledger)
    app.include_router(admin_inventory_router, prefix="/admin/store")

    return app


app = create_app()
