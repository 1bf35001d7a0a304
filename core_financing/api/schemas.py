"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..amortization import MAX_INSTALLMENTS, InstallmentRow, ScheduleSummary
from ..audit import AuditEvent
from ..loans import LoanDetail, LoanTerms, PortfolioSummary
from ..receivables import AccountReceivable, ARPayment


# Loan schemas
class SchedulePreviewRequest(BaseModel):
    principal: str = Field(..., description="Financed amount as decimal string")
    monthly_rate: Optional[str] = Field(None, description="Percent per month, e.g. 5")
    payment_period: str = Field("monthly", description="weekly, biweekly or monthly")
    installment_count: int = Field(..., le=MAX_INSTALLMENTS)
    start_date: date


class CreateLoanRequest(BaseModel):
    tenant_id: Optional[str] = None  # Defaults to the X-Tenant-ID header
    total_amount: str = Field(..., description="Sale total as decimal string")
    down_payment: str = "0"
    monthly_rate: Optional[str] = Field(None, description="Percent per month, e.g. 5")
    installment_count: int = Field(..., ge=1, le=MAX_INSTALLMENTS)
    payment_period: str = "monthly"
    start_date: date
    schedule: Optional[List[Dict[str, Any]]] = Field(None, description="Previewed schedule to verify")
    sale_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    item_description: Optional[str] = None

    def to_loan_terms(self, default_rate: str) -> LoanTerms:
        return LoanTerms(
            total_amount=self.total_amount,
            down_payment=self.down_payment,
            monthly_rate=self.monthly_rate if self.monthly_rate is not None else default_rate,
            installment_count=self.installment_count,
            payment_period=self.payment_period,
            start_date=self.start_date
        )


class PayInstallmentRequest(BaseModel):
    notes: Optional[str] = None


class CancelLoanRequest(BaseModel):
    reason: Optional[str] = None


# Receivable schemas
class CreateReceivableRequest(BaseModel):
    tenant_id: Optional[str] = None  # Defaults to the X-Tenant-ID header
    description: str
    original_amount: str = Field(..., description="Decimal amount as string")
    due_date: Optional[date] = None
    sale_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None


class RecordPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_method: Optional[str] = Field(None, description="efectivo, transferencia or tarjeta")
    notes: Optional[str] = None


# Response helpers
def schedule_response(rows: List[InstallmentRow], summary: ScheduleSummary) -> Dict[str, Any]:
    return {
        "installments": [row.to_dict() for row in rows],
        "summary": {
            "installment_count": summary.installment_count,
            "fixed_payment": str(summary.fixed_payment),
            "total_interest": str(summary.total_interest),
            "total_principal": str(summary.total_principal),
            "total_payments": str(summary.total_payments),
            "final_due_date": summary.final_due_date.isoformat() if summary.final_due_date else None,
        }
    }


def loan_detail_response(detail: LoanDetail, include_installments: bool = True) -> Dict[str, Any]:
    body = detail.loan.to_dict()
    body["effective_status"] = detail.effective_status.value
    if include_installments:
        body["installments"] = [i.to_dict() for i in detail.installments]
    return body


def portfolio_response(summary: PortfolioSummary, total_pending_receivables) -> Dict[str, Any]:
    return {
        "tenant_id": summary.tenant_id,
        "active_loans": summary.active_loans,
        "overdue_loans": summary.overdue_loans,
        "liquidated_loans": summary.liquidated_loans,
        "total_balance_due": str(summary.total_balance_due),
        "total_collected": str(summary.total_collected),
        "total_pending_receivables": str(total_pending_receivables),
    }


def receivable_response(receivable: AccountReceivable) -> Dict[str, Any]:
    return receivable.to_dict()


def payment_response(payment: ARPayment) -> Dict[str, Any]:
    return payment.to_dict()


def audit_event_response(event: AuditEvent) -> Dict[str, Any]:
    body = event.to_dict()
    # Chain hashes stay internal
    body.pop("previous_hash", None)
    body.pop("current_hash", None)
    return body
