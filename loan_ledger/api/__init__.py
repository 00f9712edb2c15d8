"""
Loan Ledger API Application Factory
"""

from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .loans import router as loans_router, payments_router
from .products import router as products_router
from ..config import get_config
from ..errors import (
    AlreadyReversed, ConcurrentModification, DuplicatePenaltyPeriod, InvalidLoanTerms,
    InvalidPaymentAmount, InvalidStateTransition, InvalidWaiverAmount, LedgerError, LoanNotActive,
    NotFoundError, NotOverdue, PenaltyPeriodRequired, ScheduleInconsistency
)
from ..service import LoanLedgerService
from ..storage import create_storage


# Most specific first; the first matching class wins
ERROR_STATUS = (
    (NotFoundError, 404),
    (AlreadyReversed, 409),
    (ConcurrentModification, 409),
    (DuplicatePenaltyPeriod, 409),
    (LoanNotActive, 409),
    (InvalidStateTransition, 409),
    (InvalidPaymentAmount, 422),
    (InvalidLoanTerms, 422),
    (InvalidWaiverAmount, 422),
    (PenaltyPeriodRequired, 422),
    (NotOverdue, 400),
    (ScheduleInconsistency, 500),
)


def status_for(error: LedgerError) -> int:
    for error_cls, status_code in ERROR_STATUS:
        if isinstance(error, error_cls):
            return status_code
    return 400


def create_app(service: Optional[LoanLedgerService] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Ledger API",
        description="Loan repayment ledger with schedules, allocation, penalties and audit",
        version="1.0.0",
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

    if service is None:
        service = LoanLedgerService(create_storage(get_config().database_url))
    app.state.service = service

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict())

    app.include_router(products_router, prefix="/products", tags=["Products"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_ledger_api",
            "version": "1.0.0"
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        create_app(),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level="debug" if debug else config.log_level.lower()
    )
