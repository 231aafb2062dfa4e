"""
Gateway credential resolution.

Order of precedence, first match wins:
    1. verified branch override
    2. verified tenant credential
    3. platform default from the environment
A level whose secret cannot be decrypted is skipped. A gym never receives
another tenant's keys, and a deleted or unknown gym resolves to nothing.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from encryption import decrypt_secret, mask_key_id, CredentialEncryptionError
from models import Branch, Tenant, GatewayCredential

logger = logging.getLogger(__name__)


class CredentialSource(str, enum.Enum):
    BRANCH = "branch"
    TENANT = "tenant"
    PLATFORM = "platform"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class ResolvedCredential:
    source: CredentialSource
    key_id: str = ""
    key_secret: str = field(default="", repr=False)
    tenant_id: Optional[int] = None
    branch_id: Optional[int] = None

    @property
    def is_configured(self) -> bool:
        return self.source != CredentialSource.NOT_CONFIGURED

    @property
    def masked_key_id(self) -> str:
        return mask_key_id(self.key_id)


NOT_CONFIGURED = ResolvedCredential(source=CredentialSource.NOT_CONFIGURED)


def platform_default() -> Optional[ResolvedCredential]:
    if settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET:
        return ResolvedCredential(
            source=CredentialSource.PLATFORM,
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
        )
    return None


def _decrypt_row(row: GatewayCredential, source: CredentialSource) -> Optional[ResolvedCredential]:
    try:
        secret = decrypt_secret(row.encrypted_key_secret, row.encryption_iv)
    except CredentialEncryptionError as e:
        logger.error(
            f"Skipping {source.value} credential for tenant {row.tenant_id}: {e}"
        )
        return None
    return ResolvedCredential(
        source=source,
        key_id=row.key_id,
        key_secret=secret,
        tenant_id=row.tenant_id,
        branch_id=row.branch_id,
    )


async def _verified_row(
    db: AsyncSession,
    tenant_id: int,
    branch_id: Optional[int],
) -> Optional[GatewayCredential]:
    query = select(GatewayCredential).where(
        GatewayCredential.tenant_id == tenant_id,
        GatewayCredential.is_verified == True,  # noqa: E712
    )
    if branch_id is None:
        query = query.where(GatewayCredential.branch_id.is_(None))
    else:
        query = query.where(GatewayCredential.branch_id == branch_id)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def resolve_gateway_credentials(
    db: AsyncSession,
    branch_id: Optional[int] = None,
    tenant_id: Optional[int] = None,
) -> ResolvedCredential:
    """
    Resolve the key pair to use for a branch (preferred) or a tenant.

    Read-only. Returns NOT_CONFIGURED rather than raising so callers decide
    how to surface it.
    """
    active_tenant_id = None

    if branch_id is not None:
        result = await db.execute(
            select(Branch.tenant_id)
            .join(Tenant, Tenant.id == Branch.tenant_id)
            .where(
                Branch.id == branch_id,
                Branch.deleted_at.is_(None),
                Tenant.deleted_at.is_(None),
            )
        )
        active_tenant_id = result.scalar_one_or_none()

        if active_tenant_id is not None:
            row = await _verified_row(db, active_tenant_id, branch_id)
            if row:
                resolved = _decrypt_row(row, CredentialSource.BRANCH)
                if resolved:
                    return resolved
    elif tenant_id is not None:
        result = await db.execute(
            select(Tenant.id).where(Tenant.id == tenant_id, Tenant.deleted_at.is_(None))
        )
        active_tenant_id = result.scalar_one_or_none()

    if active_tenant_id is None and (branch_id is not None or tenant_id is not None):
        # Unknown or soft-deleted gyms never fall back to the platform keys
        logger.warning(f"No active gym for branch={branch_id} tenant={tenant_id}")
        return NOT_CONFIGURED

    if active_tenant_id is not None:
        row = await _verified_row(db, active_tenant_id, None)
        if row:
            resolved = _decrypt_row(row, CredentialSource.TENANT)
            if resolved:
                return resolved

    fallback = platform_default()
    if fallback:
        return fallback

    logger.warning(f"No payment gateway credential for branch={branch_id} tenant={tenant_id}")
    return NOT_CONFIGURED
