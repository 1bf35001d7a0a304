"""
Receivable endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import FinancingSystem, get_caller, get_financing_system, get_tenant_id
from .errors import http_error
from .schemas import (
    CreateReceivableRequest, RecordPaymentRequest, audit_event_response, payment_response,
    receivable_response
)
from ..errors import FinancingError, ValidationError
from ..rbac import CallerContext
from ..receivables import ReceivableStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_receivable(
    request: CreateReceivableRequest,
    caller: CallerContext = Depends(get_caller),
    header_tenant_id: Optional[str] = Depends(get_tenant_id),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Open a receivable"""
    try:
        receivable = system.receivable_ledger.create_receivable(
            caller,
            tenant_id=request.tenant_id or header_tenant_id,
            description=request.description,
            original_amount=request.original_amount,
            due_date=request.due_date,
            sale_id=request.sale_id,
            customer_id=request.customer_id,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            notes=request.notes
        )
        return receivable_response(receivable)

    except FinancingError as e:
        raise http_error(e)


@router.get("")
async def list_receivables(
    tenant_id: Optional[str] = None,
    receivable_status: Optional[str] = None,
    caller: CallerContext = Depends(get_caller),
    header_tenant_id: Optional[str] = Depends(get_tenant_id),
    system: FinancingSystem = Depends(get_financing_system)
):
    """List a tenant's receivables"""
    try:
        tenant_id = tenant_id or header_tenant_id
        if not tenant_id:
            raise ValidationError("Missing tenant_id")
        status_filter = None
        if receivable_status is not None:
            try:
                status_filter = ReceivableStatus(receivable_status)
            except ValueError:
                raise ValidationError(f"Unknown receivable status: {receivable_status}")

        receivables = system.receivable_ledger.list_receivables(caller, tenant_id, status_filter)
        return {
            "receivables": [receivable_response(r) for r in receivables],
            "count": len(receivables),
            "total_pending": str(system.receivable_ledger.total_pending(caller, tenant_id))
        }

    except FinancingError as e:
        raise http_error(e)


@router.get("/{ar_id}")
async def get_receivable(
    ar_id: str,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Get receivable details"""
    try:
        return receivable_response(system.receivable_ledger.get_receivable(caller, ar_id))

    except FinancingError as e:
        raise http_error(e)


@router.get("/{ar_id}/history")
async def get_receivable_history(
    ar_id: str,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Audit trail of a receivable, oldest first"""
    try:
        events = system.receivable_ledger.get_history(caller, ar_id)
        return {
            "events": [audit_event_response(e) for e in events],
            "count": len(events)
        }

    except FinancingError as e:
        raise http_error(e)


@router.get("/{ar_id}/payments")
async def get_receivable_payments(
    ar_id: str,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Payment history, newest first"""
    try:
        payments = system.receivable_ledger.get_payments(caller, ar_id)
        return {
            "payments": [payment_response(p) for p in payments],
            "count": len(payments)
        }

    except FinancingError as e:
        raise http_error(e)


@router.post("/{ar_id}/payments")
async def record_payment(
    ar_id: str,
    request: RecordPaymentRequest,
    caller: CallerContext = Depends(get_caller),
    system: FinancingSystem = Depends(get_financing_system)
):
    """Record a partial or final payment"""
    try:
        result = system.receivable_ledger.record_payment(
            caller, ar_id,
            amount=request.amount,
            payment_method=request.payment_method,
            notes=request.notes
        )
        return result.to_dict()

    except FinancingError as e:
        raise http_error(e)
