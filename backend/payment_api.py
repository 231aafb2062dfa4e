"""
Payment API Endpoints
Gateway order creation, checkout verification and cash payments
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from access_gate import Principal, require_access, load_accessible_branch, ROUTE_REQUIREMENTS
from database import get_db
from entitlements import grant_entitlement
from models import Tenant, PaymentMode
from order_service import create_payment_order
from purchase_validation import PurchaseIntent
from razorpay_service import RazorpayService, razorpay_service
from schemas import CreateOrderResponse, VerifyPaymentResponse
from timezone_utils import get_tenant_today
from verification_service import VerificationRequest, verify_and_grant

logger = logging.getLogger(__name__)

# Public checkout endpoints live under /functions, the paths the SPA already calls
functions_router = APIRouter(prefix="/functions", tags=["payments"])
router = APIRouter(prefix="/api/payments", tags=["payments"])


def get_gateway(request: Request) -> RazorpayService:
    """Gateway client, overridable per app (tests mount a mock transport)"""
    return getattr(request.app.state, "gateway", None) or razorpay_service


@functions_router.post("/create-order", response_model=CreateOrderResponse)
async def create_order(
    intent: PurchaseIntent,
    gateway: RazorpayService = Depends(get_gateway),
    db: AsyncSession = Depends(get_db)
):
    """Validate a purchase and open a gateway order for it"""
    return await create_payment_order(db, intent, gateway=gateway)


@functions_router.post("/verify-payment", response_model=VerifyPaymentResponse, response_model_exclude_none=True)
async def verify_payment(
    payload: VerificationRequest,
    gateway: RazorpayService = Depends(get_gateway),
    db: AsyncSession = Depends(get_db)
):
    """Check the checkout signature and grant the purchase (idempotent per payment id)"""
    return await verify_and_grant(db, payload, gateway=gateway)


@router.post("/cash", response_model=VerifyPaymentResponse, response_model_exclude_none=True)
async def record_cash_payment(
    intent: PurchaseIntent,
    principal: Principal = Depends(require_access(ROUTE_REQUIREMENTS["payments"])),
    db: AsyncSession = Depends(get_db)
):
    """Record a purchase paid at the front desk"""
    if intent.branch_id is None:
        raise HTTPException(status_code=400, detail="branchId is required")

    branch = await load_accessible_branch(db, principal, intent.branch_id)

    tenant = await db.get(Tenant, branch.tenant_id)
    granted = await grant_entitlement(
        db,
        intent,
        branch_id=branch.id,
        mode=PaymentMode.CASH,
        today=get_tenant_today(tenant.timezone),
    )
    logger.info(f"Cash payment {granted.payment_id} recorded by user {principal.user_id}")
    return granted.to_response()
