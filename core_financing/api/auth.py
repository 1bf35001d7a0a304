"""
System wiring and caller dependencies
"""

from typing import Optional

from fastapi import Header

from ..audit import AuditTrail
from ..config import FinancingConfig, get_config
from ..errors import AuthorizationError
from ..loans import LoanManager
from ..rbac import AccessPolicy, CallerContext, Role
from ..receivables import ReceivableLedger
from ..settlement import PaymentSettlementService
from ..storage import StorageInterface, create_storage
from .errors import http_error


class FinancingSystem:
    """Financing core with all components initialized over one storage backend"""

    def __init__(self, storage: StorageInterface, settings: Optional[FinancingConfig] = None):
        settings = settings or get_config()
        self.storage = storage
        self.access_policy = AccessPolicy()
        self.audit_trail = AuditTrail(self.storage, enabled=settings.enable_audit_logging)
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.access_policy)
        self.settlement_service = PaymentSettlementService(
            self.storage, self.loan_manager, self.audit_trail, self.access_policy,
            max_retries=settings.settlement_max_retries
        )
        self.receivable_ledger = ReceivableLedger(
            self.storage, self.audit_trail, self.access_policy,
            max_retries=settings.settlement_max_retries
        )

    @classmethod
    def from_config(cls, settings: Optional[FinancingConfig] = None) -> 'FinancingSystem':
        settings = settings or get_config()
        return cls(create_storage(settings.database_url), settings)


# Global financing system instance, built on first use
financing_system: Optional[FinancingSystem] = None


def get_financing_system() -> FinancingSystem:
    global financing_system
    if financing_system is None:
        financing_system = FinancingSystem.from_config()
    return financing_system


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_tenant_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None)
) -> CallerContext:
    """
    Build the caller context from gateway headers

    The gateway authenticates the user and resolves its role in the tenant;
    this only turns those headers into a CallerContext.
    """
    if not x_user_id:
        raise http_error(AuthorizationError("Authenticated caller required"))
    if not x_user_role:
        return CallerContext(user_id=x_user_id)
    try:
        role = Role(x_user_role.strip().lower())
    except ValueError:
        raise http_error(AuthorizationError(f"Unknown role: {x_user_role}"))
    if role != Role.SUPER_ADMIN and not x_tenant_id:
        raise http_error(AuthorizationError("Tenant required for role"))
    return CallerContext.for_role(x_user_id, role, x_tenant_id)


def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> Optional[str]:
    """Tenant the request is scoped to, if the gateway sent one"""
    return x_tenant_id
