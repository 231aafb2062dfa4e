"""
Staff Operations API
Day-to-day gym administration for admins and permitted staff: price list,
gym settings, member details, manual ledger entries, invoices and check-in.

Every route is gated by the access table and scoped to one branch the
caller may work in.
"""

from datetime import datetime, timedelta
from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_gate import Principal, require_access, load_accessible_branch, ROUTE_REQUIREMENTS
from database import get_db
from invoice_service import build_invoice, generate_invoice_html
from models import (
    MonthlyPackage, CustomPackage, GymSettings, Member, LedgerEntry,
    Payment, PaymentStatus, Subscription, AttendanceLog,
)
from schemas import (
    MonthlyPackageCreate, MonthlyPackageUpdate, CustomPackageCreate, CustomPackageUpdate,
    PackageAdminResponse, GymSettingsUpdate, GymSettingsResponse, MemberUpdate, MemberResponse,
    LedgerEntryCreate, LedgerEntryResponse, InvoiceResponse, CheckInRequest, CheckInResponse,
)
from timezone_utils import get_tenant_today

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/gym", tags=["staff-operations"])

settings_access = require_access(ROUTE_REQUIREMENTS["settings"])
members_access = require_access(ROUTE_REQUIREMENTS["members"])
ledger_access = require_access(ROUTE_REQUIREMENTS["ledger"])
payments_access = require_access(ROUTE_REQUIREMENTS["payments"])
attendance_access = require_access(ROUTE_REQUIREMENTS["attendance"])

# A second scan inside this window is ignored
CHECK_IN_COOLDOWN = timedelta(minutes=10)


async def _get_in_branch(db: AsyncSession, model, row_id: int, branch_id: int, label: str):
    result = await db.execute(select(model).where(model.id == row_id, model.branch_id == branch_id))
    row = result.scalar_one_or_none()
    if row is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return row


def _apply(row, payload) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(row, field, value)
    return changes


# =============================================================================
# PACKAGES
# =============================================================================

@router.post(
    "/branches/{branch_id}/monthly-packages",
    response_model=PackageAdminResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_monthly_package(
    branch_id: int,
    payload: MonthlyPackageCreate,
    principal: Principal = Depends(settings_access),
    db: AsyncSession = Depends(get_db)
):
    branch = await load_accessible_branch(db, principal, branch_id)
    package = MonthlyPackage(branch_id=branch.id, is_active=True, **payload.model_dump())
    db.add(package)
    await db.commit()
    await db.refresh(package)

    logger.info(f"User {principal.user_id} added {package.months}-month package at {package.price} in branch {branch.id}")
    return package


@router.put("/branches/{branch_id}/monthly-packages/{package_id}", response_model=PackageAdminResponse)
async def update_monthly_package(
    branch_id: int,
    package_id: int,
    payload: MonthlyPackageUpdate,
    principal: Principal = Depends(settings_access),
    db: AsyncSession = Depends(get_db)
):
    branch = await load_accessible_branch(db, principal, branch_id)
    package = await _get_in_branch(db, MonthlyPackage, package_id, branch.id, "Package")
    changes = _apply(package, payload)
    await db.commit()
    await db.refresh(package)

    logger.info(f"User {principal.user_id} updated monthly package {package.id}: {', '.join(changes) or 'no changes'}")
    return package


@router.delete("/branches/{branch_id}/monthly-packages/{package_id}")
async def delete_monthly_package(
    branch_id: int,
    package_id: int,
    principal: Principal = Depends(settings_access),
    db: AsyncSession = Depends(get_db)
):
    branch = await load_accessible_branch(db, principal, branch_id)
    package = await _get_in_branch(db, MonthlyPackage, package_id, branch.id, "Package")
    await db.delete(package)
    await db.commit()

    logger.info(f"User {principal.user_id} deleted {package.months}-month package {package_id}")
    return {"success": True}


@router.post(
    "/branches/{branch_id}/custom-packages",
    response_model=PackageAdminResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_custom_package(
    branch_id: int,
    payload: CustomPackageCreate,
    principal: Principal = Depends(settings_access),
    db: AsyncSession = Depends(get_db)
):
    branch = await load_accessible_branch(db, principal, branch_id)
    package = CustomPackage(branch_id=branch.id, is_active=True, **payload.model_dump())
    db.add(package)
    await db.commit()
    await db.refresh(package)

    logger.info(f"User {principal.user_id} added custom package '{package.name}' in branch {branch.id}")
    return package


@router.put("/branches/{branch_id}/custom-packages/{package_id}", response_model=PackageAdminResponse)
async def update_custom_package(
    branch_id: int,
    package_id: int,
    payload: CustomPackageUpdate,
    principal: Principal = Depends(settings_access),
    db: AsyncSession = Depends(get_db)
):
    branch = await load_accessible_branch(db, principal, branch_id)
    package = await _get_in_branch(db, CustomPackage, package_id, branch.id, "Package")
    changes = _apply(package, payload)
    await db.commit()
    await db.refresh(package)

    logger.info(f"User {principal.user_id} updated custom package {package.id}: {', '.join(changes) or 'no changes'}")
    return package


@router.delete("/branches/{branch_id}/custom-packages/{package_id}")
async def delete_custom_package(
    branch_id: int,
    package_id: int,
    principal: Principal = Depends(settings_access),
    db: AsyncSession = Depends(get_db)
):
    branch = await load_accessible_branch(db, principal, branch_id)
    package = await _get_in_branch(db, CustomPackage, package_id, branch.id, "Package")
    await db.delete(package)
    await db.commit()

    logger.info(f"User {principal.user_id} deleted custom package '{package.name}'")
    return {"success": True}


# =============================================================================
# GYM SETTINGS & MEMBERS
# =============================================================================

@router.put("/branches/{branch_id}/settings", response_model=GymSettingsResponse)
async def update_gym_settings(
    branch_id: int,
    payload: GymSettingsUpdate,
    principal: Principal = Depends(settings_access),
    db: AsyncSession = Depends(get_db)
):
    """Update the branch's gym profile, creating it on first save"""
    branch = await load_accessible_branch(db, principal, branch_id)
    result = await db.execute(select(GymSettings).where(GymSettings.branch_id == branch.id))
    gym_settings = result.scalar_one_or_none()
    if gym_settings is None:
        gym_settings = GymSettings(branch_id=branch.id, gym_name=branch.name, whatsapp_enabled=False)
        db.add(gym_settings)

    changes = _apply(gym_settings, payload)
    await db.commit()
    await db.refresh(gym_settings)

    logger.info(f"User {principal.user_id} updated gym settings for branch {branch.id}: {', '.join(changes) or 'no changes'}")
    return gym_settings


@router.put("/branches/{branch_id}/members/{member_id}", response_model=MemberResponse)
async def update_member(
    branch_id: int,
    member_id: int,
    payload: MemberUpdate,
    principal: Principal = Depends(members_access),
    db: AsyncSession = Depends(get_db)
):
    branch = await load_accessible_branch(db, principal, branch_id)
    member = await _get_in_branch(db, Member, member_id, branch.id, "Member")

    if payload.phone is not None and payload.phone != member.phone:
        result = await db.execute(
            select(Member.id).where(Member.branch_id == branch.id, Member.phone == payload.phone)
        )
        if result.first() is not None:
            raise HTTPException(status_code=400, detail="Member with this phone already exists")

    changes = _apply(member, payload)
    await db.commit()
    await db.refresh(member)

    logger.info(f"User {principal.user_id} updated member {member.id}: {', '.join(changes) or 'no changes'}")
    return member


# =============================================================================
# LEDGER
# =============================================================================

@router.post(
    "/branches/{branch_id}/ledger",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_ledger_entry(
    branch_id: int,
    payload: LedgerEntryCreate,
    principal: Principal = Depends(ledger_access),
    db: AsyncSession = Depends(get_db)
):
    """Manual income or expense; dated today in the gym's timezone unless given"""
    branch = await load_accessible_branch(db, principal, branch_id)
    entry = LedgerEntry(
        branch_id=branch.id,
        entry_type=payload.entry_type,
        category=payload.category,
        description=payload.description,
        amount=payload.amount,
        entry_date=payload.entry_date or get_tenant_today(principal.tenant_timezone),
        is_auto_generated=False,
    )
    db.add(entry)
    await db.commit()
    await db.refresh(entry)

    logger.info(f"User {principal.user_id} added {entry.entry_type.value} of {entry.amount} ({entry.category})")
    return entry


@router.delete("/branches/{branch_id}/ledger/{entry_id}")
async def delete_ledger_entry(
    branch_id: int,
    entry_id: int,
    principal: Principal = Depends(ledger_access),
    db: AsyncSession = Depends(get_db)
):
    """Remove a manual entry. Rows written by a purchase stay."""
    branch = await load_accessible_branch(db, principal, branch_id)
    entry = await _get_in_branch(db, LedgerEntry, entry_id, branch.id, "Ledger entry")
    if entry.is_auto_generated:
        raise HTTPException(status_code=403, detail="Cannot delete auto-generated entries")

    await db.delete(entry)
    await db.commit()

    logger.info(f"User {principal.user_id} deleted {entry.entry_type.value} of {entry.amount}")
    return {"success": True}


# =============================================================================
# INVOICES
# =============================================================================

@router.get("/branches/{branch_id}/payments/{payment_id}/invoice")
async def get_invoice(
    branch_id: int,
    payment_id: int,
    format: str = Query("json", pattern="^(json|html|pdf)$"),
    principal: Principal = Depends(payments_access),
    db: AsyncSession = Depends(get_db)
):
    """Invoice for a completed payment as JSON, printable HTML or PDF"""
    branch = await load_accessible_branch(db, principal, branch_id)
    payment = await _get_in_branch(db, Payment, payment_id, branch.id, "Payment")
    if payment.status != PaymentStatus.SUCCESS:
        raise HTTPException(status_code=400, detail="Invoices are only issued for completed payments")

    invoice = await build_invoice(db, payment)
    if format == "json":
        return invoice
    if format == "html":
        return HTMLResponse(generate_invoice_html(invoice))

    from pdf_service import generate_invoice_pdf
    pdf_bytes = generate_invoice_pdf(invoice)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{invoice.invoice_number}.pdf"'},
    )


# =============================================================================
# CHECK-IN
# =============================================================================

async def _subscription_status(db: AsyncSession, member_id: int, today) -> str:
    result = await db.execute(
        select(Subscription.end_date)
        .where(Subscription.member_id == member_id, Subscription.status == "active")
        .order_by(Subscription.end_date.desc())
        .limit(1)
    )
    end_date = result.scalar_one_or_none()
    if end_date is None:
        return "no_subscription"
    if end_date < today:
        return "expired"
    return "active"


@router.post("/branches/{branch_id}/check-in", response_model=CheckInResponse)
async def check_in_member(
    branch_id: int,
    payload: CheckInRequest,
    principal: Principal = Depends(attendance_access),
    db: AsyncSession = Depends(get_db)
):
    """
    Record a member's visit.

    The first scan of the day checks in, the next one checks out. Scans
    within CHECK_IN_COOLDOWN of the last one are reported as duplicates.
    Members without a running subscription are let in but flagged expired.
    """
    branch = await load_accessible_branch(db, principal, branch_id)
    if payload.member_id is None and not payload.phone:
        raise HTTPException(status_code=400, detail="member_id or phone is required")

    query = select(Member).where(Member.branch_id == branch.id)
    if payload.member_id is not None:
        query = query.where(Member.id == payload.member_id)
    else:
        query = query.where(Member.phone == payload.phone)
    member = (await db.execute(query)).scalar_one_or_none()
    if member is None:
        raise HTTPException(status_code=404, detail="Member not found")

    today = get_tenant_today(principal.tenant_timezone)
    now = datetime.utcnow()
    subscription_status = await _subscription_status(db, member.id, today)

    result = await db.execute(
        select(AttendanceLog)
        .where(
            AttendanceLog.member_id == member.id,
            AttendanceLog.branch_id == branch.id,
            AttendanceLog.attendance_date == today,
        )
        .order_by(AttendanceLog.check_in_at.desc())
        .limit(1)
    )
    log: Optional[AttendanceLog] = result.scalar_one_or_none()

    if log is not None:
        last_scan = log.check_out_at or log.check_in_at
        if now - last_scan < CHECK_IN_COOLDOWN:
            wait_minutes = int((CHECK_IN_COOLDOWN - (now - last_scan)).total_seconds() // 60) + 1
            return CheckInResponse(
                status="duplicate",
                message=f"Please wait {wait_minutes} minutes before scanning again.",
                member_id=member.id,
                member_name=member.name,
                attendance_id=log.id,
                check_in_at=log.check_in_at,
                check_out_at=log.check_out_at,
                subscription_status=subscription_status,
            )

        if log.check_out_at is None:
            log.check_out_at = now
            log.status = "checked_out"
            await db.commit()
            hours = round((now - log.check_in_at).total_seconds() / 3600, 2)
            logger.info(f"Member {member.id} checked out of branch {branch.id} after {hours}h")
            return CheckInResponse(
                status="checked_out",
                message=f"Checked out successfully. Total: {hours} hours.",
                member_id=member.id,
                member_name=member.name,
                attendance_id=log.id,
                check_in_at=log.check_in_at,
                check_out_at=now,
                subscription_status=subscription_status,
            )

    expired = subscription_status != "active"
    log = AttendanceLog(
        branch_id=branch.id,
        member_id=member.id,
        attendance_date=today,
        check_in_at=now,
        status="expired" if expired else "checked_in",
        recorded_by=principal.user_id,
    )
    db.add(log)
    await db.commit()
    await db.refresh(log)

    logger.info(f"Member {member.id} checked in to branch {branch.id} ({subscription_status})")
    return CheckInResponse(
        status=log.status,
        message=(
            "Checked in. Membership has expired, please renew."
            if expired else f"Welcome {member.name}! Checked in successfully."
        ),
        member_id=member.id,
        member_name=member.name,
        attendance_id=log.id,
        check_in_at=log.check_in_at,
        subscription_status=subscription_status,
    )
