"""
Gateway Credential Endpoints
Lets a gym admin connect, inspect and remove their own Razorpay account

The key secret is write-only: after saving, clients only ever see a masked
key id and the verification timestamp.
"""

from datetime import datetime
from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_gate import Principal, require_access, ROUTE_REQUIREMENTS
from credential_resolver import platform_default
from database import get_db
from encryption import encrypt_secret, mask_key_id, CredentialEncryptionError
from models import Branch, GatewayCredential
from payment_api import get_gateway
from razorpay_service import RazorpayService, KEY_ID_PREFIX
from schemas import CredentialSaveRequest, CredentialStatusResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/functions/razorpay-credentials", tags=["gateway credentials"])

admin_access = require_access(ROUTE_REQUIREMENTS["gateway_credentials"])


def _tenant_id(principal: Principal) -> int:
    if principal.tenant_id is None:
        raise HTTPException(status_code=400, detail="No gym selected")
    return principal.tenant_id


async def _check_branch(db: AsyncSession, tenant_id: int, branch_id: Optional[int]):
    if branch_id is None:
        return
    result = await db.execute(
        select(Branch.id).where(
            Branch.id == branch_id,
            Branch.tenant_id == tenant_id,
            Branch.deleted_at.is_(None)
        )
    )
    if result.scalar_one_or_none() is None:
        raise HTTPException(status_code=404, detail="Branch not found")


async def _credential_row(db: AsyncSession, tenant_id: int, branch_id: Optional[int]) -> Optional[GatewayCredential]:
    query = select(GatewayCredential).where(GatewayCredential.tenant_id == tenant_id)
    if branch_id is None:
        query = query.where(GatewayCredential.branch_id.is_(None))
    else:
        query = query.where(GatewayCredential.branch_id == branch_id)
    result = await db.execute(query)
    return result.scalar_one_or_none()


def _status(row: Optional[GatewayCredential], branch_id: Optional[int]) -> CredentialStatusResponse:
    if row is None:
        return CredentialStatusResponse(
            connected=False,
            source="platform" if platform_default() else "not_configured",
        )
    return CredentialStatusResponse(
        connected=True,
        keyIdMasked=mask_key_id(row.key_id),
        isVerified=row.is_verified,
        verifiedAt=row.verified_at,
        source="branch" if branch_id is not None else "tenant",
    )


@router.get("/status", response_model=CredentialStatusResponse)
async def get_credential_status(
    branch_id: Optional[int] = Query(None, alias="branchId"),
    principal: Principal = Depends(admin_access),
    db: AsyncSession = Depends(get_db)
):
    """Connection status for the tenant, or for one branch override"""
    tenant_id = _tenant_id(principal)
    await _check_branch(db, tenant_id, branch_id)
    row = await _credential_row(db, tenant_id, branch_id)
    return _status(row, branch_id)


@router.post("", response_model=CredentialStatusResponse)
async def save_credentials(
    payload: CredentialSaveRequest,
    principal: Principal = Depends(admin_access),
    gateway: RazorpayService = Depends(get_gateway),
    db: AsyncSession = Depends(get_db)
):
    """
    Save a Razorpay key pair after proving it works.

    The pair is checked with a live 1 INR test order before anything is
    stored; a pair the gateway rejects is never saved.
    """
    tenant_id = _tenant_id(principal)
    key_id = payload.keyId.strip()
    key_secret = payload.keySecret.strip()

    if not key_id.startswith(KEY_ID_PREFIX):
        raise HTTPException(status_code=400, detail="Invalid Key ID format. It should start with rzp_")

    await _check_branch(db, tenant_id, payload.branchId)

    check = await gateway.verify_credentials(key_id, key_secret)
    if not check["status"]:
        logger.warning(f"Rejected Razorpay credentials for tenant {tenant_id}: {check['message']}")
        raise HTTPException(status_code=400, detail=check["message"])

    try:
        encrypted, iv = encrypt_secret(key_secret)
    except CredentialEncryptionError as e:
        logger.error(f"Cannot store credentials for tenant {tenant_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Credential storage is not configured on the server"
        )

    row = await _credential_row(db, tenant_id, payload.branchId)
    if row is None:
        row = GatewayCredential(tenant_id=tenant_id, branch_id=payload.branchId)
        db.add(row)

    row.key_id = key_id
    row.encrypted_key_secret = encrypted
    row.encryption_iv = iv
    row.is_verified = True
    row.verified_at = datetime.utcnow()
    row.created_by = principal.user_id

    await db.commit()
    await db.refresh(row)

    logger.info(f"✅ Razorpay credentials saved for tenant {tenant_id} branch {payload.branchId}: {mask_key_id(key_id)}")
    return _status(row, payload.branchId)


@router.delete("")
async def remove_credentials(
    branch_id: Optional[int] = Query(None, alias="branchId"),
    principal: Principal = Depends(admin_access),
    db: AsyncSession = Depends(get_db)
):
    """Disconnect the tenant account or a branch override"""
    tenant_id = _tenant_id(principal)
    row = await _credential_row(db, tenant_id, branch_id)
    if row is None:
        raise HTTPException(status_code=404, detail="No Razorpay credentials to remove")

    await db.delete(row)
    await db.commit()

    logger.info(f"Razorpay credentials removed for tenant {tenant_id} branch {branch_id}")
    return {"success": True, "message": "Razorpay credentials removed"}
