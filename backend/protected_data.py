"""
Protected Data Endpoint
Full gym records for signed-in admins and staff, gated per action
"""

from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_gate import (
    GateState, RouteRequirement, ROUTE_REQUIREMENTS, authorize, load_accessible_branch,
)
from auth import optional_oauth2_scheme
from database import get_db
from models import (
    PersonalTrainer, MonthlyPackage, CustomPackage, GymSettings,
    Payment, LedgerEntry, FeatureModule,
)
from schemas import (
    TrainerResponse, MonthlyPackageResponse, CustomPackageResponse,
    GymSettingsResponse, PaymentResponse, LedgerEntryResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/functions", tags=["protected"])

# Any tenant member may read trainers and packages; the rest follow the route table
PROTECTED_ACTIONS = {
    "trainers": RouteRequirement(module=FeatureModule.MEMBERS_MANAGEMENT),
    "packages": RouteRequirement(module=FeatureModule.MEMBERS_MANAGEMENT),
    "settings": ROUTE_REQUIREMENTS["settings"],
    "payments": ROUTE_REQUIREMENTS["payments"],
    "ledger": ROUTE_REQUIREMENTS["ledger"],
}

MAX_ROWS = 500


@router.get("/protected-data")
async def get_protected_data(
    action: str = Query(...),
    branch_id: int = Query(..., alias="branchId"),
    limit: int = Query(100, ge=1, le=MAX_ROWS),
    token: Optional[str] = Depends(optional_oauth2_scheme),
    db: AsyncSession = Depends(get_db)
):
    requirement = PROTECTED_ACTIONS.get(action)
    if requirement is None:
        raise HTTPException(status_code=400, detail=f"Invalid action. Use one of: {', '.join(PROTECTED_ACTIONS)}")

    decision, principal = await authorize(db, token, requirement)
    if decision.state == GateState.REDIRECT_LOGIN:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=decision.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    if decision.state == GateState.NETWORK_ERROR:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=decision.message)
    if not decision.allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.message)

    branch = await load_accessible_branch(db, principal, branch_id)

    if action == "trainers":
        result = await db.execute(
            select(PersonalTrainer).where(PersonalTrainer.branch_id == branch.id).order_by(PersonalTrainer.name)
        )
        return {"trainers": [TrainerResponse.model_validate(t).model_dump() for t in result.scalars().all()]}

    if action == "packages":
        monthly = await db.execute(
            select(MonthlyPackage).where(MonthlyPackage.branch_id == branch.id).order_by(MonthlyPackage.months)
        )
        custom = await db.execute(
            select(CustomPackage).where(CustomPackage.branch_id == branch.id).order_by(CustomPackage.duration_days)
        )
        return {
            "monthly": [MonthlyPackageResponse.model_validate(p).model_dump() for p in monthly.scalars().all()],
            "custom": [CustomPackageResponse.model_validate(p).model_dump() for p in custom.scalars().all()],
        }

    if action == "settings":
        result = await db.execute(select(GymSettings).where(GymSettings.branch_id == branch.id))
        settings_row = result.scalar_one_or_none()
        if settings_row is None:
            return {"settings": GymSettingsResponse(branch_id=branch.id, gym_name=branch.name).model_dump()}
        return {"settings": GymSettingsResponse.model_validate(settings_row).model_dump()}

    if action == "payments":
        result = await db.execute(
            select(Payment)
            .where(Payment.branch_id == branch.id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        return {"payments": [PaymentResponse.model_validate(p).model_dump(mode="json") for p in result.scalars().all()]}

    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.branch_id == branch.id)
        .order_by(LedgerEntry.entry_date.desc(), LedgerEntry.id.desc())
        .limit(limit)
    )
    return {"ledger": [LedgerEntryResponse.model_validate(e).model_dump(mode="json") for e in result.scalars().all()]}
