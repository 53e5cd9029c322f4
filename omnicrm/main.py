"""
OmniCRM - Personal CRM core
FastAPI Application Entry Point

Run with:

    uvicorn omnicrm.main:app --host 0.0.0.0 --port 8000

Platform adapters are registered on the core at startup by whatever
deployment wires them in; without adapters the sync endpoints return 404
for every platform while contact and message endpoints work normally.
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from omnicrm.routes import crm
from omnicrm.services.crm_core import CrmCore, build_crm_core
from config.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(core: Optional[CrmCore] = None) -> FastAPI:
    """
    Build the FastAPI app around a CRM core.

    Args:
        core: Pre-built core (tests pass one over a temp database); built
            from settings on startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan - startup and shutdown."""
        if getattr(app.state, "crm_core", None) is None:
            app.state.crm_core = build_crm_core()
            logger.info(f"CRM core ready (database {settings.crm_db_path})")
        yield
        logger.info("Shutting down OmniCRM")

    app = FastAPI(
        title="OmniCRM",
        description="Personal CRM core: contact unification, message threading and sync",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.crm_core = core

    # CORS middleware for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(crm.router)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert validation errors to 400 with clear messages."""
        sanitized_errors = []
        for error in exc.errors():
            sanitized = {k: v for k, v in dict(error).items() if k != "ctx"}
            if "input" in sanitized and isinstance(sanitized["input"], bytes):
                sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
            sanitized_errors.append(sanitized)

        return JSONResponse(
            status_code=400,
            content={"error": "Validation error", "detail": sanitized_errors}
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        core = app.state.crm_core
        checks = {
            "core_initialized": core is not None,
            "adapters_registered": bool(core and core.coordinator.adapters),
        }
        return {
            "status": "healthy" if checks["core_initialized"] else "degraded",
            "service": "omnicrm",
            "checks": checks,
        }

    return app


app = create_app()
