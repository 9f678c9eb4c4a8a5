"""
Loan Ledger API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import LedgerError, ValidationError
from ..logging_config import get_logger, log_action
from .dashboard import router as dashboard_router
from .loans import router as loans_router
from .parties import creditors_router, debtors_router, users_router
from .reports import router as reports_router


logger = get_logger("loan_ledger.api")


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Map every ledger error to its status with an ``{"error", "detail"}`` body"""
    level = "error" if exc.http_status >= 500 else "warning"
    log_action(
        logger, level, exc.message,
        user_id=request.headers.get("X-User-Id"),
        action=f"{request.method} {request.url.path}",
        resource=exc.kind
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies and parameters are validation errors (400)"""
    fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
    error = ValidationError("Missing or invalid fields: " + ", ".join(fields), {"fields": fields})
    return await ledger_error_handler(request, error)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Ledger API",
        description="Creditor/debtor installment loan ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(users_router, prefix="/users", tags=["Users"])
    app.include_router(debtors_router, prefix="/debtors", tags=["Debtors"])
    app.include_router(creditors_router, prefix="/creditors", tags=["Creditors"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])
    app.include_router(dashboard_router, prefix="/dashboard", tags=["Dashboard"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_ledger_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Ledger API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "users": "/users",
                "debtors": "/debtors",
                "creditors": "/creditors",
                "loans": "/loans",
                "reports": "/reports",
                "dashboard": "/dashboard",
            }
        }

    return app


app = create_app()
