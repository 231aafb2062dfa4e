"""
Authorization Gate
Decides whether a caller may open a route or run a privileged operation

Rules are evaluated in order and the first match decides:
    1. no valid session                          -> redirect to login
    2. super admin route, caller is not one      -> denied
    3. admin-only route, caller is staff         -> denied
       (caller without any role in a tenant      -> denied)
    4. module route, tenant plan expired         -> denied, renew plan
    5. module route, module not on the plan      -> denied, module unavailable
    6. staff caller lacks every listed capability -> denied, lists them
    7. otherwise                                 -> authorized
Super admins skip the plan checks. Store lookups are time-boxed; a timeout is
reported as a network error, never as a denial.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, FrozenSet, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from auth import decode_access_token, optional_oauth2_scheme
from config import settings
from database import get_db
from models import (
    User, Tenant, TenantLimits, Branch, StaffPermission, tenant_members,
    UserRole, StaffCapability, FeatureModule, DEFAULT_FEATURES,
)
from payment_errors import NetworkTimeoutError, TenantAccessError, PurchaseValidationError
from timezone_utils import get_tenant_today

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/access", tags=["access"])


class GateState(str, enum.Enum):
    AUTHORIZED = "authorized"
    DENIED = "denied"
    REDIRECT_LOGIN = "redirect_login"
    NETWORK_ERROR = "network_error"


class DenialReason(str, enum.Enum):
    SUPER_ADMIN_REQUIRED = "super_admin_required"
    ADMIN_REQUIRED = "admin_required"
    NOT_TENANT_MEMBER = "not_tenant_member"
    PLAN_EXPIRED = "plan_expired"
    MODULE_UNAVAILABLE = "module_unavailable"
    MISSING_PERMISSION = "missing_permission"
    TENANT_SUSPENDED = "tenant_suspended"


CAPABILITY_LABELS: Dict[StaffCapability, str] = {
    StaffCapability.MANAGE_MEMBERS: "Manage Members",
    StaffCapability.ACCESS_LEDGER: "Access Ledger",
    StaffCapability.ACCESS_PAYMENTS: "Access Payments",
    StaffCapability.ACCESS_ANALYTICS: "Access Analytics",
    StaffCapability.CHANGE_SETTINGS: "Change Settings",
}

MODULE_LABELS: Dict[FeatureModule, str] = {
    FeatureModule.MEMBERS_MANAGEMENT: "Members Management",
    FeatureModule.ATTENDANCE: "Attendance",
    FeatureModule.PAYMENTS_BILLING: "Payments & Billing",
    FeatureModule.STAFF_MANAGEMENT: "Staff Management",
    FeatureModule.REPORTS_ANALYTICS: "Reports & Analytics",
    FeatureModule.WORKOUT_DIET_PLANS: "Workout & Diet Plans",
    FeatureModule.NOTIFICATIONS: "Notifications",
    FeatureModule.INTEGRATIONS: "Integrations",
    FeatureModule.LEADS_CRM: "Leads & CRM",
}


def enabled_modules(features: Optional[dict]) -> FrozenSet[FeatureModule]:
    """Modules switched on by a tenant feature map, defaults filling the gaps"""
    features = features or {}
    return frozenset(
        module for module, default in DEFAULT_FEATURES.items()
        if features.get(module.value, default)
    )


@dataclass(frozen=True)
class Principal:
    """Everything the gate needs to know about a caller"""
    user_id: int
    is_super_admin: bool = False
    tenant_id: Optional[int] = None
    tenant_timezone: Optional[str] = None
    role: Optional[UserRole] = None
    capabilities: FrozenSet[StaffCapability] = frozenset()
    # Empty means every branch of the tenant
    branch_ids: FrozenSet[int] = frozenset()
    plan_expiry_date: Optional[date] = None
    modules: FrozenSet[FeatureModule] = field(default_factory=lambda: enabled_modules(None))

    @property
    def is_staff(self) -> bool:
        return self.role == UserRole.STAFF and not self.is_super_admin

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN or self.is_super_admin

    def can_access_branch(self, branch_id: int) -> bool:
        if not self.is_staff or not self.branch_ids:
            return True
        return branch_id in self.branch_ids


@dataclass(frozen=True)
class RouteRequirement:
    super_admin_only: bool = False
    admin_only: bool = False
    module: Optional[FeatureModule] = None
    # OR semantics: any one of these lets staff in
    any_of: FrozenSet[StaffCapability] = frozenset()


@dataclass(frozen=True)
class AccessDecision:
    state: GateState
    reason: Optional[DenialReason] = None
    message: str = ""

    @property
    def allowed(self) -> bool:
        return self.state == GateState.AUTHORIZED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
        }


AUTHORIZED = AccessDecision(GateState.AUTHORIZED)
REDIRECT_LOGIN = AccessDecision(GateState.REDIRECT_LOGIN, message="Please sign in to continue")


def _denied(reason: DenialReason, message: str) -> AccessDecision:
    return AccessDecision(GateState.DENIED, reason, message)


def evaluate_access(
    principal: Optional[Principal],
    requirement: RouteRequirement,
    today: date,
) -> AccessDecision:
    """Pure rule evaluation, see module docstring for the order"""
    if principal is None:
        return REDIRECT_LOGIN

    if requirement.super_admin_only and not principal.is_super_admin:
        return _denied(
            DenialReason.SUPER_ADMIN_REQUIRED,
            "This section is only available to platform administrators.",
        )

    if requirement.admin_only and principal.is_staff:
        return _denied(
            DenialReason.ADMIN_REQUIRED,
            "This section is only available to gym administrators.",
        )

    if not principal.is_super_admin and principal.role is None:
        return _denied(
            DenialReason.NOT_TENANT_MEMBER,
            "Your account is not linked to any gym. Contact your administrator.",
        )

    if requirement.module is not None and not principal.is_super_admin:
        module_label = MODULE_LABELS[requirement.module]
        if principal.plan_expiry_date is not None and principal.plan_expiry_date < today:
            return _denied(
                DenialReason.PLAN_EXPIRED,
                f"Your plan expired on {principal.plan_expiry_date.isoformat()}. "
                f"Please renew your plan to continue using {module_label}.",
            )
        if requirement.module not in principal.modules:
            return _denied(
                DenialReason.MODULE_UNAVAILABLE,
                f"The {module_label} module is not available on your current plan. "
                f"Contact your administrator to enable it.",
            )

    if principal.is_staff and requirement.any_of:
        if not (principal.capabilities & requirement.any_of):
            required = " or ".join(
                CAPABILITY_LABELS[cap] for cap in StaffCapability if cap in requirement.any_of
            )
            return _denied(
                DenialReason.MISSING_PERMISSION,
                f"You don't have permission to access this section. Required: {required}",
            )

    return AUTHORIZED


def evaluate_tenant_payments(
    tenant: Optional[Tenant],
    limits: Optional[TenantLimits],
    today: date,
) -> AccessDecision:
    """Whether a tenant may take payments at all, regardless of who is paying"""
    if tenant is None or tenant.deleted_at is not None or not tenant.is_active:
        return _denied(DenialReason.TENANT_SUSPENDED, "This gym is not accepting payments right now")

    expiry = limits.plan_expiry_date if limits else None
    if expiry is not None and expiry < today:
        return _denied(
            DenialReason.PLAN_EXPIRED,
            "This gym's plan has expired. Online payments are unavailable until it is renewed.",
        )

    modules = enabled_modules(limits.features if limits else None)
    if FeatureModule.PAYMENTS_BILLING not in modules:
        return _denied(
            DenialReason.MODULE_UNAVAILABLE,
            "Online payments are not enabled for this gym",
        )

    return AUTHORIZED


# Named routes the front end asks about
ROUTE_REQUIREMENTS: Dict[str, RouteRequirement] = {
    "admin_dashboard": RouteRequirement(admin_only=True),
    "staff_management": RouteRequirement(admin_only=True, module=FeatureModule.STAFF_MANAGEMENT),
    "trainers": RouteRequirement(admin_only=True, module=FeatureModule.MEMBERS_MANAGEMENT),
    "activity_logs": RouteRequirement(admin_only=True),
    "branches": RouteRequirement(admin_only=True),
    "gateway_credentials": RouteRequirement(admin_only=True, module=FeatureModule.INTEGRATIONS),
    "members": RouteRequirement(
        module=FeatureModule.MEMBERS_MANAGEMENT,
        any_of=frozenset({StaffCapability.MANAGE_MEMBERS}),
    ),
    "payments": RouteRequirement(
        module=FeatureModule.PAYMENTS_BILLING,
        any_of=frozenset({StaffCapability.ACCESS_PAYMENTS}),
    ),
    "ledger": RouteRequirement(
        module=FeatureModule.PAYMENTS_BILLING,
        any_of=frozenset({StaffCapability.ACCESS_LEDGER}),
    ),
    "analytics": RouteRequirement(
        module=FeatureModule.REPORTS_ANALYTICS,
        any_of=frozenset({StaffCapability.ACCESS_ANALYTICS}),
    ),
    "settings": RouteRequirement(any_of=frozenset({StaffCapability.CHANGE_SETTINGS})),
    "attendance": RouteRequirement(
        module=FeatureModule.ATTENDANCE,
        any_of=frozenset({StaffCapability.MANAGE_MEMBERS}),
    ),
    "qr_code": RouteRequirement(any_of=frozenset({StaffCapability.CHANGE_SETTINGS})),
    "platform_console": RouteRequirement(super_admin_only=True),
}


async def _fetch_principal(db: AsyncSession, payload: dict) -> Optional[Principal]:
    result = await db.execute(select(User).where(User.id == int(payload["sub"])))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        return None

    tenant_id = payload.get("tenant_id")
    if tenant_id is None:
        return Principal(user_id=user.id, is_super_admin=user.is_super_admin)

    result = await db.execute(
        select(Tenant).where(Tenant.id == tenant_id, Tenant.deleted_at.is_(None))
    )
    tenant = result.scalar_one_or_none()
    if tenant is None:
        return Principal(user_id=user.id, is_super_admin=user.is_super_admin)

    result = await db.execute(
        select(tenant_members.c.role).where(
            tenant_members.c.tenant_id == tenant.id,
            tenant_members.c.user_id == user.id,
            tenant_members.c.is_active == True
        )
    )
    role = result.scalar_one_or_none()

    capabilities = frozenset()
    branch_ids = frozenset()
    if role == UserRole.STAFF:
        result = await db.execute(
            select(StaffPermission).where(
                StaffPermission.tenant_id == tenant.id,
                StaffPermission.user_id == user.id
            )
        )
        permission = result.scalar_one_or_none()
        if permission:
            capabilities = permission.granted()
            branch_ids = frozenset(branch.id for branch in permission.branches)

    result = await db.execute(select(TenantLimits).where(TenantLimits.tenant_id == tenant.id))
    limits = result.scalar_one_or_none()

    return Principal(
        user_id=user.id,
        is_super_admin=user.is_super_admin,
        tenant_id=tenant.id,
        tenant_timezone=tenant.timezone,
        role=role,
        capabilities=capabilities,
        branch_ids=branch_ids,
        plan_expiry_date=limits.plan_expiry_date if limits else None,
        modules=enabled_modules(limits.features if limits else None),
    )


@retry(
    retry=retry_if_exception_type((asyncio.TimeoutError, OperationalError)),
    stop=stop_after_attempt(settings.AUTH_RETRY_ATTEMPTS + 1),
    wait=wait_exponential(multiplier=0.5, max=4),
    reraise=True,
    before_sleep=lambda retry_state: logger.warning(
        f"Authorization lookup attempt {retry_state.attempt_number} failed. Retrying..."
    )
)
async def _fetch_principal_with_timeout(bind, payload: dict) -> Optional[Principal]:
    # A timed-out lookup is cancelled mid-query, so each attempt gets its own session
    async with AsyncSession(bind, expire_on_commit=False) as session:
        return await asyncio.wait_for(
            _fetch_principal(session, payload),
            timeout=settings.AUTH_TIMEOUT_SECONDS,
        )


async def load_principal(db: AsyncSession, token: Optional[str]) -> Optional[Principal]:
    """
    Principal for a bearer token, None when there is no valid session.

    Lookups run on short-lived sessions bound to the same engine as db, so a
    cancelled attempt never leaves db half way through a query.

    Raises:
        NetworkTimeoutError: the store did not answer within the retry budget
    """
    payload = decode_access_token(token)
    if payload is None:
        return None
    try:
        return await _fetch_principal_with_timeout(db.bind, payload)
    except (asyncio.TimeoutError, OperationalError) as e:
        logger.error(f"Authorization lookup failed after retries: {type(e).__name__}")
        raise NetworkTimeoutError()


async def authorize(
    db: AsyncSession,
    token: Optional[str],
    requirement: RouteRequirement,
    today: Optional[date] = None,
) -> tuple:
    """(decision, principal). Timeouts become a NETWORK_ERROR decision."""
    try:
        principal = await load_principal(db, token)
    except NetworkTimeoutError as e:
        return AccessDecision(GateState.NETWORK_ERROR, message=e.message), None

    if today is None:
        today = get_tenant_today(principal.tenant_timezone if principal else None)
    return evaluate_access(principal, requirement, today), principal


def require_access(requirement: RouteRequirement):
    """
    Dependency factory for gated endpoints.

    Usage:
        @router.get("/ledger")
        async def ledger(principal: Principal = Depends(require_access(ROUTE_REQUIREMENTS["ledger"]))):
            ...
    """
    async def checker(
        token: Optional[str] = Depends(optional_oauth2_scheme),
        db: AsyncSession = Depends(get_db)
    ) -> Principal:
        decision, principal = await authorize(db, token, requirement)
        if decision.state == GateState.REDIRECT_LOGIN:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=decision.message,
                headers={"WWW-Authenticate": "Bearer"},
            )
        if decision.state == GateState.NETWORK_ERROR:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=decision.message)
        if decision.state == GateState.DENIED:
            logger.warning(f"Access denied for user {principal.user_id}: {decision.reason.value}")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.message)
        return principal
    return checker


async def load_accessible_branch(db: AsyncSession, principal: Principal, branch_id: int) -> Branch:
    """
    Live branch the caller may work in.

    Branches of other tenants are reported as missing, not forbidden.
    """
    result = await db.execute(
        select(Branch).where(Branch.id == branch_id, Branch.deleted_at.is_(None))
    )
    branch = result.scalar_one_or_none()
    if branch is None or (not principal.is_super_admin and branch.tenant_id != principal.tenant_id):
        raise HTTPException(status_code=404, detail="Branch not found")
    if not principal.can_access_branch(branch.id):
        raise HTTPException(status_code=403, detail="You don't have access to this branch")
    return branch


async def check_branch_accepts_payments(
    db: AsyncSession,
    branch_id: Optional[int],
    today: Optional[date] = None,
) -> Branch:
    """
    Branch a purchase is for, after checking its tenant may take payments.

    Raises:
        PurchaseValidationError: branch missing or unknown
        TenantAccessError: tenant suspended, plan expired or payments module off
    """
    if branch_id is None:
        raise PurchaseValidationError("branchId", "is required")

    result = await db.execute(
        select(Branch).where(Branch.id == branch_id, Branch.deleted_at.is_(None))
    )
    branch = result.scalar_one_or_none()
    if branch is None:
        raise PurchaseValidationError("branchId", "branch not found")

    tenant = await db.get(Tenant, branch.tenant_id)
    result = await db.execute(select(TenantLimits).where(TenantLimits.tenant_id == branch.tenant_id))
    limits = result.scalar_one_or_none()

    if today is None:
        today = get_tenant_today(tenant.timezone if tenant else None)

    decision = evaluate_tenant_payments(tenant, limits, today)
    if not decision.allowed:
        logger.warning(f"Payment blocked for branch {branch_id}: {decision.reason.value}")
        raise TenantAccessError(decision.message)
    return branch


@router.get("/check")
async def check_route_access(
    route: str = Query(..., description="Route name, e.g. payments"),
    token: Optional[str] = Depends(optional_oauth2_scheme),
    db: AsyncSession = Depends(get_db)
):
    """Gate decision for a named route, rendered by the client instead of thrown"""
    requirement = ROUTE_REQUIREMENTS.get(route)
    if requirement is None:
        raise HTTPException(status_code=404, detail=f"Unknown route: {route}")

    decision, _ = await authorize(db, token, requirement)
    return {"route": route, **decision.to_dict()}
