"""
Order Service
Turns a validated purchase intent into a gateway order

Nothing here retries: a second order for the same purchase could end up as
a double charge.
"""

import logging
from datetime import date
from typing import Optional, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_gate import check_branch_accepts_payments
from credential_resolver import resolve_gateway_credentials
from models import PaymentOrder, PaymentOrderStatus, MonthlyPackage, CustomPackage
from payment_errors import GatewayNotConfiguredError, PurchaseValidationError
from purchase_validation import PurchaseIntent, to_minor_units, calculate_package_amount
from razorpay_service import RazorpayService, razorpay_service, generate_receipt

logger = logging.getLogger(__name__)


async def check_package_price(db: AsyncSession, intent: PurchaseIntent, branch_id: int) -> None:
    """
    Compare the amount with the branch's price list.

    A custom package must exist and sets the price. A monthly purchase is
    checked when the branch sells a package for that many months; without one
    the gym's own pricing stands.
    """
    expected = None
    if intent.custom_package_id is not None:
        result = await db.execute(
            select(CustomPackage).where(
                CustomPackage.id == intent.custom_package_id,
                CustomPackage.branch_id == branch_id,
                CustomPackage.is_active == True,
            )
        )
        package = result.scalar_one_or_none()
        if package is None:
            raise PurchaseValidationError("customPackageId", "package not found for this branch")
        expected = calculate_package_amount(package.price, trainer_fee=intent.trainer_fee or 0)
    elif intent.months is not None:
        result = await db.execute(
            select(MonthlyPackage).where(
                MonthlyPackage.branch_id == branch_id,
                MonthlyPackage.months == intent.months,
                MonthlyPackage.is_active == True,
            )
        )
        package = result.scalars().first()
        if package is not None:
            expected = calculate_package_amount(
                package.price,
                joining_fee=package.joining_fee if intent.is_new_member else 0,
                trainer_fee=intent.trainer_fee or 0,
            )

    if expected is not None and to_minor_units(expected) != to_minor_units(intent.amount):
        logger.warning(f"Amount {intent.amount} does not match package price {expected} for branch {branch_id}")
        raise PurchaseValidationError("amount", f"does not match the package price ({expected:,.2f})")


async def create_payment_order(
    db: AsyncSession,
    intent: PurchaseIntent,
    gateway: Optional[RazorpayService] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    Create a gateway order for a purchase.

    Steps: tenant gate for the branch, price list check, credential
    resolution, gateway call,
    then the pending intent is recorded under the gateway order id so
    verification can compare against it.

    Returns:
        {"orderId", "amount", "currency", "keyId"}, amount in paise

    Raises:
        PurchaseValidationError, TenantAccessError, GatewayNotConfiguredError, GatewayError
    """
    gateway = gateway or razorpay_service

    branch = await check_branch_accepts_payments(db, intent.branch_id, today)
    await check_package_price(db, intent, branch.id)

    credential = await resolve_gateway_credentials(db, branch_id=branch.id)
    if not credential.is_configured:
        raise GatewayNotConfiguredError()

    amount_paise = to_minor_units(intent.amount)
    receipt = generate_receipt()

    order = await gateway.create_order(
        key_id=credential.key_id,
        key_secret=credential.key_secret,
        amount_paise=amount_paise,
        receipt=receipt,
        notes=intent.to_notes(),
    )

    pending = PaymentOrder(
        razorpay_order_id=order["id"],
        tenant_id=branch.tenant_id,
        branch_id=branch.id,
        amount_paise=amount_paise,
        currency=order.get("currency", gateway.currency),
        receipt=receipt,
        key_id=credential.key_id,
        credential_source=credential.source.value,
        intent=intent.model_dump(mode="json"),
        status=PaymentOrderStatus.CREATED,
    )
    db.add(pending)
    await db.commit()

    logger.info(
        f"Order {order['id']} created for branch {branch.id} "
        f"({amount_paise} paise, {credential.source.value} key {credential.masked_key_id})"
    )

    return {
        "orderId": order["id"],
        "amount": amount_paise,
        "currency": pending.currency,
        "keyId": credential.key_id,
    }
