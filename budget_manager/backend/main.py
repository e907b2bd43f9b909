"""
FastAPI Backend for Budget Manager
Main application file
"""
import os
import logging
from datetime import datetime
from typing import Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..database import BudgetDatabase, NotFoundError, PersistenceError, ValidationError
from ..importer import TransactionImporter
from ..price_sources import AssetPricer, ExternalServiceError, PriceSource, default_sources
from ..reports import ReportGenerator
from .api import accounts, investments, reports, tags, transactions

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://localhost:5173,http://localhost:8080"


def _register_exception_handlers(app: FastAPI):
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ExternalServiceError)
    async def external_service_handler(request: Request, exc: ExternalServiceError):
        logger.error(f"Price source failure on {request.url.path}: {exc}")
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error(f"Database failure on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Database operation failed"}
        )


def create_app(db_path: Optional[str] = None,
               price_sources: Optional[Dict[str, PriceSource]] = None) -> FastAPI:
    """
    Build the API.

    Args:
        db_path: SQLite file, overrides DATABASE_PATH
        price_sources: Price source registry, defaults to CoinMarketCap and Yahoo
    """
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

    app = FastAPI(
        title="Budget Manager API",
        description="Personal budget ledger with transfers, tags, imports and net-worth reporting",
        version=VERSION
    )

    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS).split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    db = BudgetDatabase(db_path=db_path or os.getenv("DATABASE_PATH", "data/budget.db"))
    app.state.db = db
    app.state.reports = ReportGenerator(db)
    app.state.importer = TransactionImporter(db)
    app.state.pricer = AssetPricer(db, price_sources if price_sources is not None else default_sources())

    _register_exception_handlers(app)

    app.include_router(accounts.router, prefix="/api/accounts", tags=["Accounts"])
    app.include_router(transactions.router, prefix="/api/transactions", tags=["Transactions"])
    app.include_router(tags.router, prefix="/api/tags", tags=["Tags"])
    app.include_router(investments.router, prefix="/api", tags=["Investments"])
    app.include_router(reports.router, prefix="/api", tags=["Reports"])

    @app.get("/")
    def read_root():
        """Root endpoint"""
        return {
            "message": "Budget Manager API",
            "version": VERSION,
            "docs": "/docs",
            "status": "running"
        }

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "OK",
            "timestamp": datetime.now().isoformat()
        }

    return app


def main():
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "budget_manager.backend.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
