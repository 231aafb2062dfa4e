"""
Public Data Endpoint
Read-only data for unauthenticated registration pages

Only display fields leave this module: prices and durations, trainer names
and fees, branch names. Phone numbers, specializations, trainer payout terms
and anything credential related stay server-side.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models import Branch, Tenant, PersonalTrainer, MonthlyPackage, CustomPackage
from schemas import TrainerPublic, MonthlyPackageResponse, CustomPackageResponse, BranchPublic

router = APIRouter(prefix="/functions", tags=["public"])

PUBLIC_ACTIONS = ("packages", "trainers", "branch")


async def _active_branch(db: AsyncSession, branch_id: int) -> Branch:
    result = await db.execute(
        select(Branch)
        .join(Tenant, Tenant.id == Branch.tenant_id)
        .where(
            Branch.id == branch_id,
            Branch.is_active == True,
            Branch.deleted_at.is_(None),
            Tenant.deleted_at.is_(None),
            Tenant.is_active == True
        )
    )
    branch = result.scalar_one_or_none()
    if branch is None:
        raise HTTPException(status_code=404, detail="Branch not found")
    return branch


@router.get("/public-data")
async def get_public_data(
    action: str = Query(...),
    branch_id: int = Query(..., alias="branchId"),
    db: AsyncSession = Depends(get_db)
):
    if action not in PUBLIC_ACTIONS:
        raise HTTPException(status_code=400, detail=f"Invalid action. Use one of: {', '.join(PUBLIC_ACTIONS)}")

    branch = await _active_branch(db, branch_id)

    if action == "branch":
        return {"branch": BranchPublic.model_validate(branch).model_dump()}

    if action == "trainers":
        result = await db.execute(
            select(PersonalTrainer)
            .where(PersonalTrainer.branch_id == branch.id, PersonalTrainer.is_active == True)
            .order_by(PersonalTrainer.name)
        )
        return {
            "trainers": [TrainerPublic.model_validate(t).model_dump() for t in result.scalars().all()]
        }

    monthly = await db.execute(
        select(MonthlyPackage)
        .where(MonthlyPackage.branch_id == branch.id, MonthlyPackage.is_active == True)
        .order_by(MonthlyPackage.months)
    )
    custom = await db.execute(
        select(CustomPackage)
        .where(CustomPackage.branch_id == branch.id, CustomPackage.is_active == True)
        .order_by(CustomPackage.duration_days)
    )
    return {
        "monthly": [MonthlyPackageResponse.model_validate(p).model_dump() for p in monthly.scalars().all()],
        "custom": [CustomPackageResponse.model_validate(p).model_dump() for p in custom.scalars().all()],
    }
