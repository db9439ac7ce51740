"""
Contact Enrichment API Routes Package.

Example:
    from api.routes import enrich_router, audience_router

    app.include_router(enrich_router)
    app.include_router(audience_router)
"""
from api.routes.audience import router as audience_router
from api.routes.enrich import router as enrich_router

__all__ = [
    "audience_router",
    "enrich_router",
]
