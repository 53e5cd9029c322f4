"""
OmniCRM API Routes Package.

Example:
    from omnicrm.routes import crm_router

    app.include_router(crm_router)
"""

from omnicrm.routes.crm import router as crm_router

__all__ = ["crm_router"]
