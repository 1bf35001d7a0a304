"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import FinancingSystem, get_caller, get_financing_system, get_tenant_id
from .errors import http_error
from .schemas import (
    CancelLoanRequest, CreateLoanRequest, PayInstallmentRequest, SchedulePreviewRequest,
    audit_event_response, loan_detail_response, portfolio_response, schedule_response
)
from ..amortization import generate_schedule, summarize_schedule
from ..config import get_config
from ..errors import FinancingError, ValidationError
from ..loans import LoanStatus
from ..rbac import CallerContext, Permission


router = APIRouter()


def _parse_status(value: Optional[str]) -> Optional[LoanStatus]:
    if value is None:
        return None
    try:
        return LoanStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown loan status: {value}")


def _require_tenant(tenant_id: Optional[str]) -> str:
    if not tenant_id:
        raise ValidationError("Missing tenant_id")
    return tenant_id


@router.post("/schedule/preview")
async def preview_schedule(
    request: SchedulePreviewRequest,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Amortization schedule for the quoted terms, nothing is stored"""
    try:
        system.access_policy.require(caller, Permission.VIEW_FINANCIALS)
        rows = generate_schedule(
            request.principal,
            request.monthly_rate if request.monthly_rate is not None else get_config().default_monthly_rate,
            request.payment_period,
            request.installment_count,
            request.start_date
        )
        return schedule_response(rows, summarize_schedule(rows))

    except FinancingError as e:
        raise http_error(e)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    caller: CallerContext = Depends(get_caller),
    header_tenant_id: Optional[str] = Depends(get_tenant_id),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Create a loan with its full installment set"""
    try:
        loan = system.loan_manager.create_loan(
            caller,
            tenant_id=_require_tenant(request.tenant_id or header_tenant_id),
            terms=request.to_loan_terms(get_config().default_monthly_rate),
            schedule=request.schedule,
            sale_id=request.sale_id,
            customer_id=request.customer_id,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            item_description=request.item_description
        )
        detail = system.loan_manager.get_loan_detail(caller, loan.id)
        return loan_detail_response(detail)

    except FinancingError as e:
        raise http_error(e)


@router.get("")
async def list_loans(
    tenant_id: Optional[str] = None,
    loan_status: Optional[str] = None,
    caller: CallerContext = Depends(get_caller),
    header_tenant_id: Optional[str] = Depends(get_tenant_id),
    system: FinancingSystem = Depends(get_financing_system)
):
    """List a tenant's loans, optionally filtered by effective status"""
    try:
        details = system.loan_manager.list_loans(
            caller,
            _require_tenant(tenant_id or header_tenant_id),
            status=_parse_status(loan_status)
        )
        return {
            "loans": [loan_detail_response(d, include_installments=False) for d in details],
            "count": len(details)
        }

    except FinancingError as e:
        raise http_error(e)


@router.get("/summary")
async def get_portfolio_summary(
    tenant_id: Optional[str] = None,
    caller: CallerContext = Depends(get_caller),
    header_tenant_id: Optional[str] = Depends(get_tenant_id),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Financing KPIs for a tenant"""
    try:
        tenant_id = _require_tenant(tenant_id or header_tenant_id)
        summary = system.loan_manager.portfolio_summary(caller, tenant_id)
        pending = system.receivable_ledger.total_pending(caller, tenant_id)
        return portfolio_response(summary, pending)

    except FinancingError as e:
        raise http_error(e)


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Get loan details with installments"""
    try:
        detail = system.loan_manager.get_loan_detail(caller, loan_id)
        return loan_detail_response(detail)

    except FinancingError as e:
        raise http_error(e)


@router.get("/{loan_id}/history")
async def get_loan_history(
    loan_id: str,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Audit trail of a loan, oldest first"""
    try:
        events = system.loan_manager.get_loan_history(caller, loan_id)
        return {
            "events": [audit_event_response(e) for e in events],
            "count": len(events)
        }

    except FinancingError as e:
        raise http_error(e)


@router.post("/{loan_id}/installments/{installment_id}/pay")
async def pay_installment(
    loan_id: str,
    installment_id: str,
    request: Optional[PayInstallmentRequest] = None,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Pay one installment at its scheduled amount"""
    try:
        result = system.settlement_service.pay_installment(
            caller, loan_id, installment_id,
            notes=request.notes if request else None
        )
        return result.to_dict()

    except FinancingError as e:
        raise http_error(e)


@router.post("/{loan_id}/liquidate")
async def liquidate_loan(
    loan_id: str,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Early payoff: settle every open installment, forgiving future interest"""
    try:
        result = system.settlement_service.liquidate_loan(caller, loan_id)
        return result.to_dict()

    except FinancingError as e:
        raise http_error(e)


@router.post("/{loan_id}/cancel")
async def cancel_loan(
    loan_id: str,
    request: Optional[CancelLoanRequest] = None,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Cancel a loan that has no paid installments"""
    try:
        loan = system.loan_manager.cancel_loan(
            caller, loan_id, reason=request.reason if request else None
        )
        return {
            "loan_id": loan.id,
            "status": loan.status.value,
            "message": "Loan cancelled successfully"
        }

    except FinancingError as e:
        raise http_error(e)


@router.post("/{loan_id}/reconcile")
async def reconcile_loan(
    loan_id: str,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Recompute the loan aggregates from its installments"""
    try:
        result = system.settlement_service.reconcile_loan(caller, loan_id)
        return result.to_dict()

    except FinancingError as e:
        raise http_error(e)
