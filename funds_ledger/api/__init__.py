"""
Funds Ledger API Application Factory
"""

import uuid
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import get_config
from ..errors import LedgerError, PersistenceError
from ..logging_config import correlation_context, get_logger, setup_logging
from .auth import BankingSystem
from .loans import router as loans_router
from .transfers import router as transfers_router

logger = get_logger(__name__)


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Funds Ledger API",
        description="Funds transfers and loan servicing over a versioned ledger",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or BankingSystem()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        with correlation_context(correlation_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        # Storage text never reaches the client
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        error = PersistenceError("An unexpected error occurred")
        return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})

    app.include_router(transfers_router, prefix="/transfers", tags=["Transfers"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "funds_ledger_api",
            "version": "1.0.0"
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format)
    uvicorn.run(
        "funds_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="info"
    )
