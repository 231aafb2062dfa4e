"""
Tenant Management API Endpoints
Branch administration and staff permissions within the current gym
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from datetime import datetime
from typing import List
import logging

from access_gate import require_access, ROUTE_REQUIREMENTS, Principal
from database import get_db
from models import (
    TenantLimits, Branch, User, Member, PersonalTrainer, StaffPermission,
    tenant_members, UserRole, StaffCapability,
)
from schemas import (
    BranchCreate, BranchUpdate, BranchResponse,
    StaffPermissionUpdate, StaffPermissionResponse, StaffMemberResponse,
    TenantUsage, LimitCheckResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/tenants", tags=["tenants"])

LIMITED_RESOURCES = ("branches", "staff", "members", "trainers", "whatsapp_messages")


# =============================================================================
# USAGE & LIMITS
# =============================================================================

async def get_tenant_usage(db: AsyncSession, tenant_id: int) -> TenantUsage:
    branches = await db.scalar(
        select(func.count(Branch.id)).where(Branch.tenant_id == tenant_id, Branch.deleted_at.is_(None))
    )
    staff = await db.scalar(
        select(func.count(tenant_members.c.id)).where(
            tenant_members.c.tenant_id == tenant_id,
            tenant_members.c.role == UserRole.STAFF,
            tenant_members.c.is_active == True
        )
    )
    members = await db.scalar(
        select(func.count(Member.id))
        .join(Branch, Branch.id == Member.branch_id)
        .where(Branch.tenant_id == tenant_id)
    )
    trainers = await db.scalar(
        select(func.count(PersonalTrainer.id))
        .join(Branch, Branch.id == PersonalTrainer.branch_id)
        .where(Branch.tenant_id == tenant_id, PersonalTrainer.is_active == True)
    )
    messages = await db.scalar(
        select(TenantLimits.whatsapp_messages_used).where(TenantLimits.tenant_id == tenant_id)
    )
    return TenantUsage(
        branches=branches or 0,
        staff=staff or 0,
        members=members or 0,
        trainers=trainers or 0,
        whatsapp_messages=messages or 0,
    )


async def check_tenant_limit(db: AsyncSession, tenant_id: int, resource: str) -> LimitCheckResponse:
    """Whether one more of a resource fits in the tenant's plan"""
    if resource not in LIMITED_RESOURCES:
        raise HTTPException(status_code=400, detail=f"Unknown resource. Use one of: {', '.join(LIMITED_RESOURCES)}")

    result = await db.execute(select(TenantLimits).where(TenantLimits.tenant_id == tenant_id))
    limits = result.scalar_one_or_none()
    if limits is None:
        raise HTTPException(status_code=404, detail="Tenant limits not found")

    usage = await get_tenant_usage(db, tenant_id)
    if resource == "branches":
        current, limit = usage.branches, limits.max_branches
    elif resource == "staff":
        # Staff cap scales with the number of branches
        current, limit = usage.staff, limits.max_staff_per_branch * max(usage.branches, 1)
    elif resource == "members":
        current, limit = usage.members, limits.max_members
    elif resource == "trainers":
        current, limit = usage.trainers, limits.max_trainers
    else:
        current, limit = usage.whatsapp_messages, limits.max_monthly_whatsapp_messages

    return LimitCheckResponse(resource=resource, allowed=current < limit, current=current, limit=limit)


# =============================================================================
# BRANCHES
# =============================================================================

branch_admin_access = require_access(ROUTE_REQUIREMENTS["branches"])


def _current_tenant_id(principal: Principal) -> int:
    if principal.tenant_id is None:
        raise HTTPException(status_code=400, detail="No gym selected for this session")
    return principal.tenant_id


async def _get_branch(db: AsyncSession, tenant_id: int, branch_id: int) -> Branch:
    result = await db.execute(
        select(Branch).where(
            Branch.id == branch_id,
            Branch.tenant_id == tenant_id,
            Branch.deleted_at.is_(None)
        )
    )
    branch = result.scalar_one_or_none()
    if not branch:
        raise HTTPException(status_code=404, detail="Branch not found")
    return branch


@router.get("/me/branches", response_model=List[BranchResponse])
async def list_branches(
    principal: Principal = Depends(branch_admin_access),
    db: AsyncSession = Depends(get_db)
):
    """List all branches of the current gym"""
    tenant_id = _current_tenant_id(principal)
    result = await db.execute(
        select(Branch)
        .where(Branch.tenant_id == tenant_id, Branch.deleted_at.is_(None))
        .order_by(Branch.is_default.desc(), Branch.name)
    )
    return result.scalars().all()


@router.post("/me/branches", response_model=BranchResponse, status_code=status.HTTP_201_CREATED)
async def create_branch(
    branch_data: BranchCreate,
    principal: Principal = Depends(branch_admin_access),
    db: AsyncSession = Depends(get_db)
):
    """Create a new branch, subject to the plan's branch limit"""
    tenant_id = _current_tenant_id(principal)
    limit = await check_tenant_limit(db, tenant_id, "branches")
    if not limit.allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Branch limit reached ({limit.limit}). Contact support to upgrade your plan."
        )

    existing_branch = await db.execute(
        select(Branch.id).where(
            Branch.tenant_id == tenant_id,
            Branch.name == branch_data.name,
            Branch.deleted_at.is_(None)
        )
    )
    if existing_branch.scalar_one_or_none():
        raise HTTPException(
            status_code=400,
            detail=f"A branch with the name '{branch_data.name}' already exists. Please choose a different name."
        )

    new_branch = Branch(
        tenant_id=tenant_id,
        name=branch_data.name,
        address=branch_data.address,
        phone=branch_data.phone,
        email=branch_data.email,
        is_default=limit.current == 0,
    )
    db.add(new_branch)
    await db.commit()
    await db.refresh(new_branch)

    logger.info(f"Branch {new_branch.id} created for tenant {tenant_id}")
    return new_branch


@router.put("/me/branches/{branch_id}", response_model=BranchResponse)
async def update_branch(
    branch_id: int,
    branch_data: BranchUpdate,
    principal: Principal = Depends(branch_admin_access),
    db: AsyncSession = Depends(get_db)
):
    """Update branch details"""
    tenant_id = _current_tenant_id(principal)
    branch = await _get_branch(db, tenant_id, branch_id)

    update_data = branch_data.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        setattr(branch, field, value)

    await db.commit()
    await db.refresh(branch)
    return branch


@router.delete("/me/branches/{branch_id}")
async def delete_branch(
    branch_id: int,
    principal: Principal = Depends(branch_admin_access),
    db: AsyncSession = Depends(get_db)
):
    """Soft-delete a branch. Its members and payments stay for reporting."""
    tenant_id = _current_tenant_id(principal)
    branch = await _get_branch(db, tenant_id, branch_id)
    if branch.is_default:
        raise HTTPException(status_code=400, detail="The main branch cannot be deleted")

    branch.deleted_at = datetime.utcnow()
    branch.is_active = False
    await db.commit()

    logger.info(f"Branch {branch.id} soft-deleted for tenant {tenant_id}")
    return {"message": f"Branch '{branch.name}' deleted"}


# =============================================================================
# STAFF PERMISSIONS
# =============================================================================

staff_admin_access = require_access(ROUTE_REQUIREMENTS["staff_management"])


def _permission_response(user_id: int, tenant_id: int, permission: StaffPermission) -> StaffPermissionResponse:
    return StaffPermissionResponse(
        user_id=user_id,
        tenant_id=tenant_id,
        **{cap.value: getattr(permission, cap.value) for cap in StaffCapability},
        branch_ids=sorted(branch.id for branch in permission.branches),
    )


@router.get("/me/staff", response_model=List[StaffMemberResponse])
async def list_staff(
    principal: Principal = Depends(staff_admin_access),
    db: AsyncSession = Depends(get_db)
):
    """List active members of the gym team"""
    tenant_id = _current_tenant_id(principal)
    result = await db.execute(
        select(User.id, User.email, User.full_name, tenant_members.c.role)
        .join(tenant_members, tenant_members.c.user_id == User.id)
        .where(tenant_members.c.tenant_id == tenant_id, tenant_members.c.is_active == True)
        .order_by(User.full_name)
    )
    return [
        StaffMemberResponse(user_id=row.id, email=row.email, full_name=row.full_name, role=row.role)
        for row in result.all()
    ]


@router.get("/me/staff/{user_id}/permissions", response_model=StaffPermissionResponse)
async def get_staff_permissions(
    user_id: int,
    principal: Principal = Depends(staff_admin_access),
    db: AsyncSession = Depends(get_db)
):
    tenant_id = _current_tenant_id(principal)
    result = await db.execute(
        select(StaffPermission).where(
            StaffPermission.tenant_id == tenant_id,
            StaffPermission.user_id == user_id
        )
    )
    permission = result.scalar_one_or_none()
    if permission is None:
        # Staff start with nothing granted
        permission = StaffPermission(
            tenant_id=tenant_id,
            user_id=user_id,
            **{cap.value: False for cap in StaffCapability},
        )
        permission.branches = []
    return _permission_response(user_id, tenant_id, permission)


@router.put("/me/staff/{user_id}/permissions", response_model=StaffPermissionResponse)
async def update_staff_permissions(
    user_id: int,
    payload: StaffPermissionUpdate,
    principal: Principal = Depends(staff_admin_access),
    db: AsyncSession = Depends(get_db)
):
    """Grant or revoke staff capabilities and restrict the branches they see"""
    tenant_id = _current_tenant_id(principal)
    result = await db.execute(
        select(tenant_members.c.role).where(
            tenant_members.c.tenant_id == tenant_id,
            tenant_members.c.user_id == user_id,
            tenant_members.c.is_active == True
        )
    )
    role = result.scalar_one_or_none()
    if role is None:
        raise HTTPException(status_code=404, detail="User not found in this gym")
    if role != UserRole.STAFF:
        raise HTTPException(status_code=400, detail="Permissions apply to staff accounts only")

    result = await db.execute(
        select(StaffPermission).where(
            StaffPermission.tenant_id == tenant_id,
            StaffPermission.user_id == user_id
        )
    )
    permission = result.scalar_one_or_none()
    if permission is None:
        permission = StaffPermission(
            tenant_id=tenant_id,
            user_id=user_id,
            **{cap.value: False for cap in StaffCapability},
        )
        permission.branches = []
        db.add(permission)

    update_data = payload.model_dump(exclude_unset=True)
    branch_ids = update_data.pop("branch_ids", None)
    for field, value in update_data.items():
        if value is not None:
            setattr(permission, field, value)

    if branch_ids is not None:
        branches = []
        if branch_ids:
            result = await db.execute(
                select(Branch).where(
                    Branch.id.in_(branch_ids),
                    Branch.tenant_id == tenant_id,
                    Branch.deleted_at.is_(None)
                )
            )
            branches = list(result.scalars().all())
            if len(branches) != len(set(branch_ids)):
                raise HTTPException(status_code=400, detail="Invalid branch selection")
        permission.branches = branches

    await db.commit()
    await db.refresh(permission, attribute_names=["branches"])

    logger.info(f"Staff permissions updated for user {user_id} in tenant {tenant_id}")
    return _permission_response(user_id, tenant_id, permission)
