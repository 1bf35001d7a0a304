"""
Role-Based Access Control Module

Authorization checks for financial records. Authentication happens upstream;
this module receives an already-authenticated caller (user id plus the roles
it holds in each tenant) and decides whether it may act on a tenant's loans
and receivables.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from .errors import AuthorizationError, NotFoundError


class Role(Enum):
    """Shop roles as assigned by the identity provider"""
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    TECHNICIAN = "technician"


class Permission(Enum):
    """Financial permissions"""
    VIEW_FINANCIALS = "view_financials"
    CREATE_LOAN = "create_loan"
    SETTLE_PAYMENTS = "settle_payments"
    CANCEL_LOAN = "cancel_loan"
    RECONCILE_LOAN = "reconcile_loan"
    CREATE_RECEIVABLE = "create_receivable"


_FINANCIAL = {
    Permission.VIEW_FINANCIALS,
    Permission.CREATE_LOAN,
    Permission.SETTLE_PAYMENTS,
    Permission.CREATE_RECEIVABLE,
}

ROLE_PERMISSIONS: Dict[Role, Set[Permission]] = {
    Role.SUPER_ADMIN: set(Permission),
    Role.ADMIN: set(Permission),
    Role.MANAGER: set(_FINANCIAL),
    Role.STAFF: set(),
    Role.TECHNICIAN: set(),
}


@dataclass(frozen=True)
class RoleGrant:
    """A role held by a user within one tenant"""
    tenant_id: Optional[str]
    role: Role


@dataclass
class CallerContext:
    """Authenticated caller as supplied by the identity provider"""
    user_id: str
    grants: List[RoleGrant] = field(default_factory=list)

    @classmethod
    def for_role(cls, user_id: str, role: Role, tenant_id: Optional[str] = None) -> 'CallerContext':
        """Caller holding a single role"""
        return cls(user_id=user_id, grants=[RoleGrant(tenant_id=tenant_id, role=role)])

    @property
    def is_super_admin(self) -> bool:
        return any(g.role == Role.SUPER_ADMIN for g in self.grants)

    def permissions_for(self, tenant_id: str) -> Set[Permission]:
        """Permissions the caller holds in a tenant"""
        permissions: Set[Permission] = set()
        for grant in self.grants:
            if grant.role == Role.SUPER_ADMIN or grant.tenant_id == tenant_id:
                permissions |= ROLE_PERMISSIONS[grant.role]
        return permissions

    def tenants_with(self, permission: Permission) -> Set[str]:
        """Tenants in which the caller holds a permission"""
        return {
            g.tenant_id for g in self.grants
            if g.tenant_id and permission in ROLE_PERMISSIONS[g.role]
        }


class AccessPolicy:
    """Checks a caller against the permission an operation needs"""

    def require(self, caller: Optional[CallerContext], permission: Permission) -> None:
        """
        Reject callers that hold the permission in no tenant at all

        Runs before any other check, so it never depends on the record.

        Raises:
            AuthorizationError: If the caller is missing or lacks the permission
        """
        if caller is None or not caller.user_id:
            raise AuthorizationError("Authenticated caller required")
        if caller.is_super_admin:
            return
        if not caller.tenants_with(permission):
            raise AuthorizationError("Insufficient permissions")

    def require_tenant(self, caller: CallerContext, permission: Permission,
                       tenant_id: str, resource: str) -> None:
        """
        Check the caller may act on a record owned by tenant_id

        A record in a tenant the caller cannot act on is reported as missing,
        so callers cannot discover other tenants' records.

        Raises:
            NotFoundError: If the caller lacks the permission in that tenant
        """
        if permission not in caller.permissions_for(tenant_id):
            raise NotFoundError(f"{resource} not found")

    def can_access(self, caller: CallerContext, permission: Permission, tenant_id: str) -> bool:
        """Check if caller holds a permission in a tenant"""
        return permission in caller.permissions_for(tenant_id)
