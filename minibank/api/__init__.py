"""
Ledger API Application Factory
"""

import uvicorn
from fastapi import FastAPI

from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    setup_logging(get_config().log_level)

    app = FastAPI(
        title="Minibank Ledger API",
        description="Accounts, self-deposits and transfers with an immutable audit log",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "minibank",
            "version": __version__
        }

    @app.get("/")
    def get_api_info():
        """Get API information"""
        return {
            "name": "Minibank Ledger API",
            "version": __version__,
            "message": "Welcome to Minibank",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "accounts": "/accounts",
                "transactions": "/transactions",
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "minibank.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
