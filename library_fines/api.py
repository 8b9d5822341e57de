"""
FastAPI Admin API Module

Administrative endpoints for settling fines, manual bans, reports and
triggering the daily jobs. Operator identity arrives in the ``X-Operator-Id``
header; authenticating it is the job of the gateway in front of this service.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .errors import (
    LibraryFinesError, NotFound, AlreadySettled, InsufficientAmount,
    InvalidInput, InvalidTransition, PersistenceConflict
)
from .models import FineTransaction, Loan
from .reporting import FineSummary
from .system import LibraryFineSystem


# Pydantic models for API requests/responses
class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    method: str = Field(..., description="CASH, CARD, BANK_TRANSFER, ONLINE or OTHER")
    reference: Optional[str] = None
    notes: Optional[str] = None


class WaiveRequest(BaseModel):
    reason: str = Field(..., description="Why the fine is forgiven")


class RefundRequest(BaseModel):
    reason: str


class BanRequest(BaseModel):
    reason: str
    days: Optional[int] = Field(None, description="Ban length in days; omit for a permanent ban")


def transaction_to_response(transaction: FineTransaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "receipt_number": transaction.receipt_number,
        "member_id": transaction.member_id,
        "loan_id": transaction.loan_id,
        "amount": str(transaction.amount),
        "payment_method": transaction.payment_method.value,
        "status": transaction.status.value,
        "transaction_date": transaction.transaction_date.isoformat(),
        "payment_reference": transaction.payment_reference,
        "notes": transaction.notes,
        "processed_by": transaction.processed_by,
        "refunds_receipt": transaction.refunds_receipt,
    }


def loan_to_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "book_id": loan.book_id,
        "book_title": loan.book_title,
        "due_date": loan.due_date.isoformat(),
        "days_overdue": loan.days_overdue,
        "fine_amount": str(loan.fine_amount),
        "fine_status": loan.fine_status.value,
    }


def summary_to_response(summary: FineSummary) -> Dict[str, Any]:
    return {
        "member_id": summary.member_id,
        "member_name": summary.member_name,
        "current_fines_due": str(summary.current_fines_due),
        "total_fines_paid": str(summary.total_fines_paid),
        "overdue_books_count": summary.overdue_books_count,
        "is_banned": summary.is_banned,
        "ban_end_date": summary.ban_end_date.isoformat() if summary.ban_end_date else None,
        "pending_loans": [loan_to_response(loan) for loan in summary.pending_loans],
        "total_pending_fines": str(summary.total_pending_fines),
        "recent_transactions": [transaction_to_response(t) for t in summary.recent_transactions],
    }


# Error type -> HTTP status; most specific classes first
ERROR_STATUS = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (AlreadySettled, status.HTTP_409_CONFLICT),
    (PersistenceConflict, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (InsufficientAmount, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidInput, status.HTTP_400_BAD_REQUEST),
]


def status_for(error: LibraryFinesError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def get_system(request: Request) -> LibraryFineSystem:
    return request.app.state.system


def require_operator(x_operator_id: Optional[str] = Header(None)) -> str:
    if not x_operator_id:
        raise HTTPException(status_code=401, detail="X-Operator-Id header is required")
    return x_operator_id


router = APIRouter()


@router.post("/loans/{loan_id}/pay", status_code=status.HTTP_201_CREATED, tags=["Fines"])
def pay_fine(
    loan_id: str,
    request: PaymentRequest,
    operator_id: str = Depends(require_operator),
    system: LibraryFineSystem = Depends(get_system)
):
    """Pay a loan's fine in full"""
    transaction = system.payment_processor.pay(
        loan_id,
        request.amount,
        request.method,
        reference=request.reference,
        notes=request.notes,
        operator_id=operator_id
    )
    return transaction_to_response(transaction)


@router.post("/loans/{loan_id}/waive", status_code=status.HTTP_201_CREATED, tags=["Fines"])
def waive_fine(
    loan_id: str,
    request: WaiveRequest,
    operator_id: str = Depends(require_operator),
    system: LibraryFineSystem = Depends(get_system)
):
    """Waive a loan's pending fine"""
    transaction = system.payment_processor.waive(loan_id, request.reason, operator_id)
    return transaction_to_response(transaction)


@router.post("/transactions/{receipt_number}/refund", status_code=status.HTTP_201_CREATED, tags=["Fines"])
def refund_payment(
    receipt_number: str,
    request: RefundRequest,
    operator_id: str = Depends(require_operator),
    system: LibraryFineSystem = Depends(get_system)
):
    """Refund a completed payment with a compensating entry"""
    refund = system.payment_processor.refund(receipt_number, request.reason, operator_id)
    return transaction_to_response(refund)


@router.get("/members/{member_id}/fines", tags=["Members"])
def get_member_fines(
    member_id: str,
    system: LibraryFineSystem = Depends(get_system)
):
    """Fine summary for a member"""
    return summary_to_response(system.reporter.get_fine_summary(member_id))


@router.post("/members/{member_id}/ban", tags=["Members"])
def ban_member(
    member_id: str,
    request: BanRequest,
    operator_id: str = Depends(require_operator),
    system: LibraryFineSystem = Depends(get_system)
):
    """Manually ban a member"""
    member = system.ban_enforcer.impose_ban(member_id, request.reason, operator_id, days=request.days)
    return {
        "member_id": member.id,
        "state": member.state.value,
        "is_banned": member.is_banned,
        "ban_reason": member.ban_reason,
        "ban_start_date": member.ban_start_date.isoformat(),
        "ban_end_date": member.ban_end_date.isoformat() if member.ban_end_date else None,
        "total_ban_count": member.total_ban_count,
    }


@router.get("/reports/totals", tags=["Reports"])
def get_totals(system: LibraryFineSystem = Depends(get_system)):
    """Collected, waived and outstanding fine totals"""
    return system.reporter.get_totals().to_dict()


@router.post("/jobs/accrual", tags=["Jobs"])
def trigger_accrual(
    operator_id: str = Depends(require_operator),
    system: LibraryFineSystem = Depends(get_system)
):
    """Run the fine accrual job now"""
    system.logger.info(f"Fine accrual triggered by operator {operator_id}")
    return system.scheduler.run_accrual().to_dict()


@router.post("/jobs/ban-sweep", tags=["Jobs"])
def trigger_ban_sweep(
    operator_id: str = Depends(require_operator),
    system: LibraryFineSystem = Depends(get_system)
):
    """Run the ban expiry sweep now"""
    system.logger.info(f"Ban sweep triggered by operator {operator_id}")
    restored: List[str] = system.scheduler.run_ban_sweep()
    return {"restored": restored, "count": len(restored)}


def create_app(system: Optional[LibraryFineSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Library Fines API",
        description="Fine accrual, settlement and member ban administration",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or LibraryFineSystem()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LibraryFinesError)
    async def library_fines_error_handler(request: Request, exc: LibraryFinesError):
        return JSONResponse(
            status_code=status_for(exc),
            content={"detail": str(exc), "error": type(exc).__name__}
        )

    app.include_router(router)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        current = app.state.system
        return {
            "status": "healthy",
            "service": "library_fines_api",
            "version": __version__,
            "scheduler_running": current.scheduler.running,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


def run_server(system: LibraryFineSystem, host: str = "0.0.0.0", port: int = 8095):
    """Run the FastAPI server"""
    uvicorn.run(create_app(system), host=host, port=port, log_level="info")
