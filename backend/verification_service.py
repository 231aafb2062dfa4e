"""
Verification Service
Checks a checkout callback and, when genuine, grants the purchase

Order of checks:
    1. the gateway order must be one we created
    2. a payment id seen before returns the recorded result, provided the
       signature is the one that was verified the first time
    3. the branch must still resolve to the key that created the order
    4. HMAC-SHA256 over "order_id|payment_id" must match
    5. the re-submitted purchase must match the recorded one
Only then does the Entitlement Writer run. A failed check writes nothing.
"""

import hmac
import logging
from datetime import date
from typing import Optional, Dict, Any

from pydantic import Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credential_resolver import resolve_gateway_credentials
from entitlements import grant_entitlement, result_for_payment
from models import PaymentOrder, PaymentOrderStatus, Payment, PaymentMode, Tenant
from payment_errors import (
    GatewayNotConfiguredError, SignatureVerificationError, BusinessRuleError,
)
from purchase_validation import PurchaseIntent, parse_purchase_intent, to_minor_units
from razorpay_service import RazorpayService, razorpay_service
from timezone_utils import get_tenant_today

logger = logging.getLogger(__name__)


class VerificationRequest(PurchaseIntent):
    """Checkout callback triple plus the purchase as the client remembers it"""
    razorpay_order_id: str = Field(..., alias="razorpay_order_id", min_length=1, max_length=100)
    razorpay_payment_id: str = Field(..., alias="razorpay_payment_id", min_length=1, max_length=100)
    razorpay_signature: str = Field(..., alias="razorpay_signature", min_length=1, max_length=256)

    def purchase(self) -> PurchaseIntent:
        return PurchaseIntent.model_validate(
            self.model_dump(exclude={"razorpay_order_id", "razorpay_payment_id", "razorpay_signature"})
        )


async def _payment_by_gateway_id(db: AsyncSession, razorpay_payment_id: str) -> Optional[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.razorpay_payment_id == razorpay_payment_id)
    )
    return result.scalar_one_or_none()


async def verify_and_grant(
    db: AsyncSession,
    request: VerificationRequest,
    gateway: Optional[RazorpayService] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    Verify a checkout callback and grant the purchase exactly once.

    Returns:
        The grant response (memberId/dailyPassUserId, subscriptionId, endDate, ...)

    Raises:
        SignatureVerificationError, BusinessRuleError, GatewayNotConfiguredError,
        PurchaseValidationError
    """
    gateway = gateway or razorpay_service
    order_id = request.razorpay_order_id
    payment_id = request.razorpay_payment_id

    result = await db.execute(
        select(PaymentOrder).where(PaymentOrder.razorpay_order_id == order_id)
    )
    order = result.scalar_one_or_none()
    if order is None:
        logger.warning(f"Verification for unknown order {order_id}")
        raise SignatureVerificationError()

    # A payment id seen before answers from the stored grant, even after a key change
    existing = await _payment_by_gateway_id(db, payment_id)
    if existing is not None:
        if existing.razorpay_order_id != order_id:
            raise BusinessRuleError("Payment does not belong to this order")
        if not order.razorpay_signature or not hmac.compare_digest(
            order.razorpay_signature.encode("utf-8"), request.razorpay_signature.encode("utf-8")
        ):
            logger.warning(f"Replay for payment {payment_id} with a different signature")
            raise SignatureVerificationError()
        logger.info(f"Payment {payment_id} already recorded, returning stored result")
        return (await result_for_payment(db, existing)).to_response()

    credential = await resolve_gateway_credentials(db, branch_id=order.branch_id)
    if not credential.is_configured:
        raise GatewayNotConfiguredError()
    if credential.key_id != order.key_id:
        logger.warning(
            f"Credential changed between order and verification for {order_id} "
            f"({order.credential_source} -> {credential.source.value})"
        )
        raise SignatureVerificationError(
            "Payment gateway settings changed during checkout. Please start the purchase again."
        )

    if not gateway.verify_payment_signature(order_id, payment_id, request.razorpay_signature, credential.key_secret):
        raise SignatureVerificationError()

    if order.status == PaymentOrderStatus.PAID:
        raise BusinessRuleError("This order has already been paid")

    # The recorded intent is what gets granted; the echoed one only has to agree
    recorded = parse_purchase_intent(order.intent)
    submitted = request.purchase()
    if submitted.fingerprint() != recorded.fingerprint():
        logger.warning(f"Purchase details changed between order and verification for {order_id}")
        raise BusinessRuleError("Purchase details do not match the order")
    if to_minor_units(recorded.amount) != order.amount_paise:
        raise BusinessRuleError("Payment amount does not match the order")

    if today is None:
        tenant = await db.get(Tenant, order.tenant_id)
        today = get_tenant_today(tenant.timezone if tenant else None)

    order.status = PaymentOrderStatus.PAID
    order.razorpay_signature = request.razorpay_signature
    try:
        granted = await grant_entitlement(
            db,
            recorded,
            branch_id=order.branch_id,
            mode=PaymentMode.ONLINE,
            today=today,
            razorpay_order_id=order_id,
            razorpay_payment_id=payment_id,
        )
    except IntegrityError:
        # A concurrent call with the same payment id won the insert
        existing = await _payment_by_gateway_id(db, payment_id)
        if existing is not None:
            logger.info(f"Duplicate verification for {payment_id} resolved to payment {existing.id}")
            return (await result_for_payment(db, existing)).to_response()
        logger.error(f"Integrity error while granting order {order_id}")
        raise BusinessRuleError()

    return granted.to_response()
