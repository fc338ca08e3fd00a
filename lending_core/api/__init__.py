"""
Lending Core API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI

from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging
from .audit import router as audit_router
from .disbursements import router as disbursements_router
from .loans import router as loans_router
from .repayments import router as repayments_router
from .system import LendingSystem, get_lending_system


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    cfg = get_config()
    setup_logging(cfg.log_level, log_format=cfg.log_format, log_file=cfg.log_file)

    app = FastAPI(
        title="Lending Core API",
        description="Loan disbursement, repayment and rollback with an audit trail",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.lending_system = system or LendingSystem()

    app.include_router(disbursements_router, prefix="/disbursements", tags=["Disbursements"])
    app.include_router(repayments_router, prefix="/repayments", tags=["Repayments"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(audit_router, prefix="/audit", tags=["Audit"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_core_api",
            "version": __version__
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "lending_core.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


__all__ = ["create_app", "run_server", "LendingSystem", "get_lending_system"]
