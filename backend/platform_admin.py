"""
Platform Super Admin API Router

Tenant provisioning, plan limits and gym lifecycle for the whole platform.

Access is restricted to super admin users only.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, insert
from datetime import datetime
from typing import List
import logging

from database import get_db
from models import User, Tenant, TenantLimits, Branch, tenant_members, UserRole, DEFAULT_FEATURES
from auth import get_password_hash, get_current_super_admin
from razorpay_service import razorpay_service
from schemas import (
    TenantCreate, TenantLimitsPayload, TenantLimitsResponse, TenantSummary,
    TenantUsage, LimitCheckResponse,
)
from tenants import get_tenant_usage, check_tenant_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/platform", tags=["Platform Admin"])


def _limits_response(limits: TenantLimits) -> TenantLimitsResponse:
    features = {module.value: default for module, default in DEFAULT_FEATURES.items()}
    features.update(limits.features or {})
    return TenantLimitsResponse(
        max_branches=limits.max_branches,
        max_staff_per_branch=limits.max_staff_per_branch,
        max_members=limits.max_members,
        max_trainers=limits.max_trainers,
        max_monthly_whatsapp_messages=limits.max_monthly_whatsapp_messages,
        whatsapp_messages_used=limits.whatsapp_messages_used or 0,
        features=features,
        plan_expiry_date=limits.plan_expiry_date,
    )


def _apply_limits(limits: TenantLimits, payload: TenantLimitsPayload):
    update_data = payload.model_dump(exclude_unset=True)
    features = update_data.pop("features", None)
    for field, value in update_data.items():
        if value is not None or field == "plan_expiry_date":
            setattr(limits, field, value)
    if features is not None:
        unknown = set(features) - {module.value for module in DEFAULT_FEATURES}
        if unknown:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown feature modules: {', '.join(sorted(unknown))}"
            )
        # Reassign so the JSON column is flagged dirty
        limits.features = {**(limits.features or {}), **features}


async def _get_tenant(db: AsyncSession, tenant_id: int) -> Tenant:
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
    tenant = result.scalar_one_or_none()
    if not tenant:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Tenant not found"
        )
    return tenant


async def _get_limits(db: AsyncSession, tenant_id: int) -> TenantLimits:
    result = await db.execute(select(TenantLimits).where(TenantLimits.tenant_id == tenant_id))
    limits = result.scalar_one_or_none()
    if limits is None:
        limits = TenantLimits(tenant_id=tenant_id)
        db.add(limits)
        await db.flush()
    return limits


@router.post("/tenants", response_model=TenantSummary, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    data: TenantCreate,
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    """
    Provision a new gym: tenant, plan limits, a main branch and the owner account.
    """
    result = await db.execute(select(Tenant.id).where(Tenant.slug == data.slug))
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Slug '{data.slug}' is already taken"
        )

    result = await db.execute(select(User.id).where(User.email == data.owner_email))
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A user with this email already exists"
        )

    tenant = Tenant(
        name=data.name,
        slug=data.slug,
        email=data.email or data.owner_email,
        phone=data.phone,
        timezone=data.timezone,
        is_active=True,
    )
    db.add(tenant)
    await db.flush()

    limits = TenantLimits(tenant_id=tenant.id)
    if data.limits:
        _apply_limits(limits, data.limits)
    db.add(limits)

    db.add(Branch(tenant_id=tenant.id, name="Main Branch", is_default=True))

    owner = User(
        email=data.owner_email,
        full_name=data.owner_name,
        hashed_password=get_password_hash(data.owner_password),
        is_active=True,
    )
    db.add(owner)
    await db.flush()

    await db.execute(
        insert(tenant_members).values(
            tenant_id=tenant.id,
            user_id=owner.id,
            role=UserRole.ADMIN,
            is_owner=True,
            is_active=True
        )
    )
    await db.commit()

    logger.info(f"Tenant '{tenant.slug}' ({tenant.id}) created by super admin {current_admin.id}")
    return TenantSummary(
        id=tenant.id,
        name=tenant.name,
        slug=tenant.slug,
        is_active=tenant.is_active,
        deleted_at=tenant.deleted_at,
        created_at=tenant.created_at,
        limits=_limits_response(limits),
        usage=await get_tenant_usage(db, tenant.id),
    )


@router.get("/tenants", response_model=List[TenantSummary])
async def list_tenants(
    include_deleted: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    """All gyms on the platform with their limits and current usage"""
    query = select(Tenant).order_by(Tenant.created_at.desc())
    if not include_deleted:
        query = query.where(Tenant.deleted_at.is_(None))
    result = await db.execute(query)
    tenants = result.scalars().all()

    result = await db.execute(
        select(TenantLimits).where(TenantLimits.tenant_id.in_([t.id for t in tenants]))
    )
    limits_by_tenant = {limits.tenant_id: limits for limits in result.scalars().all()}

    summaries = []
    for tenant in tenants:
        limits = limits_by_tenant.get(tenant.id)
        summaries.append(TenantSummary(
            id=tenant.id,
            name=tenant.name,
            slug=tenant.slug,
            is_active=tenant.is_active,
            deleted_at=tenant.deleted_at,
            created_at=tenant.created_at,
            limits=_limits_response(limits) if limits else None,
            usage=await get_tenant_usage(db, tenant.id),
        ))
    return summaries


@router.get("/tenants/{tenant_id}/usage", response_model=TenantUsage)
async def get_usage(
    tenant_id: int,
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    await _get_tenant(db, tenant_id)
    return await get_tenant_usage(db, tenant_id)


@router.put("/tenants/{tenant_id}/limits", response_model=TenantLimitsResponse)
async def update_tenant_limits(
    tenant_id: int,
    data: TenantLimitsPayload,
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    """Change resource limits, feature modules or the plan expiry date"""
    await _get_tenant(db, tenant_id)
    limits = await _get_limits(db, tenant_id)
    _apply_limits(limits, data)
    limits.updated_at = datetime.utcnow()
    await db.commit()

    logger.info(f"Limits updated for tenant {tenant_id} by super admin {current_admin.id}")
    return _limits_response(limits)


@router.get("/tenants/{tenant_id}/check-limit", response_model=LimitCheckResponse)
async def check_limit(
    tenant_id: int,
    resource: str = Query(...),
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    await _get_tenant(db, tenant_id)
    return await check_tenant_limit(db, tenant_id, resource)


@router.delete("/tenants/{tenant_id}")
async def delete_tenant(
    tenant_id: int,
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    """
    Soft-delete a gym. Rows are kept; the tenant stops resolving credentials,
    taking payments and authorizing its users.
    """
    tenant = await _get_tenant(db, tenant_id)
    if tenant.deleted_at is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant is already deleted"
        )

    tenant.deleted_at = datetime.utcnow()
    tenant.is_active = False
    tenant.updated_at = datetime.utcnow()
    await db.commit()

    logger.warning(f"Tenant '{tenant.slug}' soft-deleted by super admin {current_admin.id}")
    return {
        "success": True,
        "message": f"Tenant '{tenant.name}' has been deleted",
        "tenant_id": tenant.id,
        "deleted_at": tenant.deleted_at.isoformat()
    }


@router.get("/gateway-status")
async def get_gateway_status(
    current_admin: User = Depends(get_current_super_admin)
):
    """Platform default Razorpay key diagnostics, never the keys themselves"""
    return razorpay_service.get_configuration_status()
