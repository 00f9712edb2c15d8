"""
Request dependencies: the ledger service and the caller context
"""

from typing import Optional
from fastapi import Header, HTTPException, Request, status

from ..models import LedgerContext
from ..service import LoanLedgerService


def get_service(request: Request) -> LoanLedgerService:
    """Ledger service attached to the application"""
    return request.app.state.service


def get_context(
    x_tenant_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    x_correlation_id: Optional[str] = Header(None)
) -> LedgerContext:
    """Build the caller context from X-Tenant-ID / X-User-ID / X-Correlation-ID headers"""
    if not x_tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Tenant-ID header is required")
    return LedgerContext(tenant_id=x_tenant_id, user_id=x_user_id, correlation_id=x_correlation_id)
