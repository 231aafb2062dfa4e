"""
Invoice Service
Invoice data and printable HTML for a recorded payment
"""

import logging
from datetime import datetime
from html import escape

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    Payment, Branch, GymSettings, Member, DailyPassUser,
    Subscription, PTSubscription, DailyPassSubscription, PaymentMode,
)
from schemas import InvoiceResponse

logger = logging.getLogger(__name__)

PACKAGE_LABELS = {
    "membership": "Gym Membership",
    "gym_and_pt": "Gym + Personal Training",
    "pt": "Personal Training",
    "daily_pass": "Daily Pass",
}


def invoice_number(payment: Payment) -> str:
    """INV-<year><month>-<payment id>, stable for the life of the payment"""
    created = payment.created_at or datetime.utcnow()
    return f"INV-{created:%Y%m}-{payment.id:06d}"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count > 1 else ''}"


async def build_invoice(db: AsyncSession, payment: Payment) -> InvoiceResponse:
    """Collect everything an invoice shows: gym branding, customer, package and fee split"""
    branch = await db.get(Branch, payment.branch_id)
    result = await db.execute(select(GymSettings).where(GymSettings.branch_id == payment.branch_id))
    gym_settings = result.scalar_one_or_none()

    gym_name = (gym_settings.gym_name if gym_settings else None) or branch.name
    customer_name, customer_phone = "Unknown", ""
    if payment.member_id is not None:
        member = await db.get(Member, payment.member_id)
        if member:
            customer_name, customer_phone = member.name, member.phone
    elif payment.daily_pass_user_id is not None:
        pass_user = await db.get(DailyPassUser, payment.daily_pass_user_id)
        if pass_user:
            customer_name, customer_phone = pass_user.name, pass_user.phone

    package_name = PACKAGE_LABELS.get(payment.payment_type, "Gym Membership")
    start_date = end_date = None
    trainer_fee = 0.0

    if payment.subscription_id is not None:
        subscription = await db.get(Subscription, payment.subscription_id)
        if subscription:
            start_date, end_date = subscription.start_date, subscription.end_date
            if subscription.plan_months:
                package_name += f" ({_plural(subscription.plan_months, 'Month')})"
            elif subscription.duration_days:
                package_name += f" ({_plural(subscription.duration_days, 'Day')})"

    if payment.pt_subscription_id is not None:
        pt_subscription = await db.get(PTSubscription, payment.pt_subscription_id)
        if pt_subscription:
            trainer_fee = pt_subscription.total_fee
            if start_date is None:
                start_date, end_date = pt_subscription.start_date, pt_subscription.end_date

    if payment.daily_pass_subscription_id is not None:
        pass_subscription = await db.get(DailyPassSubscription, payment.daily_pass_subscription_id)
        if pass_subscription:
            start_date, end_date = pass_subscription.start_date, pass_subscription.end_date
            trainer_fee = pass_subscription.trainer_fee
            package_name = f"{package_name} ({pass_subscription.package_name})"

    return InvoiceResponse(
        invoice_number=invoice_number(payment),
        gym_name=gym_name,
        gym_address=(gym_settings.gym_address if gym_settings else None) or branch.address or "",
        gym_phone=(gym_settings.gym_phone if gym_settings else None) or branch.phone or "",
        branch_name=branch.name,
        customer_name=customer_name,
        customer_phone=customer_phone,
        payment_date=(payment.created_at or datetime.utcnow()).date(),
        payment_mode="Online (Razorpay)" if payment.payment_mode == PaymentMode.ONLINE else "Cash",
        payment_type=payment.payment_type,
        razorpay_payment_id=payment.razorpay_payment_id,
        package_name=package_name,
        start_date=start_date,
        end_date=end_date,
        gym_fee=round(payment.amount - trainer_fee, 2),
        trainer_fee=trainer_fee,
        amount=payment.amount,
    )


def _rupees(amount: float) -> str:
    return f"Rs. {amount:,.2f}"


def generate_invoice_html(invoice: InvoiceResponse) -> str:
    """Printable invoice; the PDF is rendered from the same markup"""

    # Escape user-provided content
    gym_name = escape(invoice.gym_name)
    gym_address = escape(invoice.gym_address)
    gym_phone = escape(invoice.gym_phone)
    branch_name = escape(invoice.branch_name)
    customer_name = escape(invoice.customer_name)
    customer_phone = escape(invoice.customer_phone)
    package_name = escape(invoice.package_name)

    period = "-"
    if invoice.start_date and invoice.end_date:
        period = f"{invoice.start_date:%d %b %Y} - {invoice.end_date:%d %b %Y}"

    rows_html = f"""
        <tr>
            <td style="padding: 8px; border-bottom: 1px solid #e5e7eb;">{package_name}</td>
            <td style="padding: 8px; border-bottom: 1px solid #e5e7eb;">{period}</td>
            <td style="padding: 8px; text-align: right; border-bottom: 1px solid #e5e7eb;">{_rupees(invoice.gym_fee)}</td>
        </tr>
        """
    if invoice.trainer_fee > 0:
        rows_html += f"""
        <tr>
            <td style="padding: 8px; border-bottom: 1px solid #e5e7eb;">Personal Training</td>
            <td style="padding: 8px; border-bottom: 1px solid #e5e7eb;">{period}</td>
            <td style="padding: 8px; text-align: right; border-bottom: 1px solid #e5e7eb;">{_rupees(invoice.trainer_fee)}</td>
        </tr>
        """

    reference_html = ""
    if invoice.razorpay_payment_id:
        reference_html = f"<div><strong>Reference:</strong> {escape(invoice.razorpay_payment_id)}</div>"

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Invoice {invoice.invoice_number}</title>
    <style>
        body {{ font-family: Helvetica, Arial, sans-serif; line-height: 1.5; color: #333; margin: 0; padding: 20px; }}
        .container {{ max-width: 640px; margin: 0 auto; padding: 30px; }}
        .header {{ display: flex; justify-content: space-between; border-bottom: 2px solid #333; padding-bottom: 16px; }}
        .header h1 {{ margin: 0; font-size: 22px; }}
        .header p {{ margin: 2px 0; font-size: 12px; color: #666; }}
        .title {{ text-align: right; }}
        .title h2 {{ margin: 0; font-size: 20px; }}
        .info-section {{ margin: 20px 0; font-size: 13px; }}
        .items-table {{ width: 100%; margin: 20px 0; border-collapse: collapse; font-size: 13px; }}
        .items-table th {{ background: #f3f4f6; padding: 8px; text-align: left; border-bottom: 2px solid #333; }}
        .total {{ text-align: right; font-size: 16px; font-weight: bold; border-top: 2px solid #333; padding-top: 10px; }}
        .footer {{ text-align: center; margin-top: 30px; color: #666; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <div>
                <h1>{gym_name}</h1>
                <p>{gym_address}</p>
                <p>{gym_phone}</p>
            </div>
            <div class="title">
                <h2>INVOICE</h2>
                <p>#{invoice.invoice_number}</p>
                <p>Date: {invoice.payment_date:%d %B %Y}</p>
            </div>
        </div>

        <div class="info-section">
            <div><strong>Bill to:</strong> {customer_name}</div>
            <div><strong>Phone:</strong> {customer_phone}</div>
            <div><strong>Branch:</strong> {branch_name}</div>
            <div><strong>Payment mode:</strong> {invoice.payment_mode}</div>
            {reference_html}
        </div>

        <table class="items-table">
            <thead>
                <tr>
                    <th>Description</th>
                    <th>Period</th>
                    <th style="text-align: right;">Amount</th>
                </tr>
            </thead>
            <tbody>
                {rows_html}
            </tbody>
        </table>

        <div class="total">Total: {_rupees(invoice.amount)}</div>

        <div class="footer">
            <p>Thank you for training with us!</p>
        </div>
    </div>
</body>
</html>"""
