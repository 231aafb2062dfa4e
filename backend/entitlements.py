"""
Entitlement Writer
Records what a completed purchase grants: member or daily pass user,
subscription window, optional PT subscription, payment row and ledger rows.

All rows go in one transaction. Any failure rolls the whole purchase back.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    Member, DailyPassUser, Subscription, PTSubscription, DailyPassSubscription,
    PersonalTrainer, CustomPackage, Payment, LedgerEntry,
    PaymentMode, PaymentStatus, LedgerEntryType,
)
from payment_errors import BusinessRuleError
from purchase_validation import PurchaseIntent

logger = logging.getLogger(__name__)


@dataclass
class EntitlementResult:
    payment_id: int
    end_date: date
    subscription_id: Optional[int] = None
    member_id: Optional[int] = None
    daily_pass_user_id: Optional[int] = None
    pt_subscription_id: Optional[int] = None
    is_daily_pass: bool = False

    def to_response(self) -> dict:
        if self.is_daily_pass:
            return {
                "success": True,
                "isDailyPass": True,
                "dailyPassUserId": self.daily_pass_user_id,
                "subscriptionId": self.subscription_id,
                "endDate": self.end_date.isoformat(),
            }
        return {
            "success": True,
            "memberId": self.member_id,
            "subscriptionId": self.subscription_id,
            "ptSubscriptionId": self.pt_subscription_id,
            "endDate": self.end_date.isoformat(),
        }


def add_months(start: date, months: int) -> date:
    """Same day N months later, clamped to the month's last day (Jan 31 + 1 -> Feb 28/29)"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


async def renewal_start_date(db: AsyncSession, member_id: int, today: date) -> date:
    """Day after the member's latest active subscription ends, or today if none is running"""
    result = await db.execute(
        select(Subscription.end_date)
        .where(
            Subscription.member_id == member_id,
            Subscription.status == "active",
            Subscription.end_date >= today,
        )
        .order_by(Subscription.end_date.desc())
        .limit(1)
    )
    latest_end = result.scalar_one_or_none()
    if latest_end is None:
        return today
    return latest_end + timedelta(days=1)


async def pt_start_date(db: AsyncSession, member_id: int, trainer_id: int, today: date) -> date:
    """PT extensions continue from the running PT window with the same trainer"""
    result = await db.execute(
        select(PTSubscription.end_date)
        .where(
            PTSubscription.member_id == member_id,
            PTSubscription.trainer_id == trainer_id,
            PTSubscription.status == "active",
            PTSubscription.end_date >= today,
        )
        .order_by(PTSubscription.end_date.desc())
        .limit(1)
    )
    latest_end = result.scalar_one_or_none()
    if latest_end is None:
        return today
    return latest_end + timedelta(days=1)


def _ledger_income(
    branch_id: int,
    category: str,
    description: str,
    amount: float,
    today: date,
    **links,
) -> LedgerEntry:
    return LedgerEntry(
        branch_id=branch_id,
        entry_type=LedgerEntryType.INCOME,
        category=category,
        description=description,
        amount=amount,
        entry_date=today,
        is_auto_generated=True,
        **links,
    )


def _trainer_percentage_expense(
    trainer: PersonalTrainer,
    pt_fee: float,
    member_name: str,
    today: date,
    **links,
) -> Optional[LedgerEntry]:
    """Expense row for trainers paid a share of each PT fee"""
    if trainer.payment_category != "monthly_percentage" or not trainer.percentage_fee:
        return None
    share = round(pt_fee * trainer.percentage_fee / 100, 2)
    if share <= 0:
        return None
    return LedgerEntry(
        branch_id=trainer.branch_id,
        entry_type=LedgerEntryType.EXPENSE,
        category="trainer_percentage",
        description=f"{trainer.name} - {trainer.percentage_fee:g}% of PT fee for {member_name}",
        amount=share,
        entry_date=today,
        trainer_id=trainer.id,
        is_auto_generated=True,
        **links,
    )


async def _load_trainer(db: AsyncSession, trainer_id: int, branch_id: int) -> PersonalTrainer:
    result = await db.execute(
        select(PersonalTrainer).where(
            PersonalTrainer.id == trainer_id,
            PersonalTrainer.branch_id == branch_id,
            PersonalTrainer.is_active == True
        )
    )
    trainer = result.scalar_one_or_none()
    if trainer is None:
        raise BusinessRuleError("Trainer not found for this branch")
    return trainer


async def _resolve_member(db: AsyncSession, purchase: PurchaseIntent, branch_id: int) -> Member:
    if purchase.is_new_member and purchase.member_id is None:
        result = await db.execute(
            select(Member.id).where(
                Member.branch_id == branch_id,
                Member.phone == purchase.member_phone
            )
        )
        if result.first() is not None:
            raise BusinessRuleError("Member with this phone already exists")

        member = Member(branch_id=branch_id, name=purchase.member_name, phone=purchase.member_phone)
        db.add(member)
        await db.flush()
        logger.info(f"Created new member {member.id} in branch {branch_id}")
        return member

    result = await db.execute(
        select(Member).where(Member.id == purchase.member_id, Member.branch_id == branch_id)
    )
    member = result.scalar_one_or_none()
    if member is None:
        raise BusinessRuleError("Member not found for this branch")
    return member


def _new_payment(
    purchase: PurchaseIntent,
    branch_id: int,
    mode: PaymentMode,
    payment_type: str,
    razorpay_order_id: Optional[str],
    razorpay_payment_id: Optional[str],
    **links,
) -> Payment:
    return Payment(
        branch_id=branch_id,
        amount=purchase.amount,
        payment_mode=mode,
        status=PaymentStatus.SUCCESS,
        payment_type=payment_type,
        razorpay_order_id=razorpay_order_id,
        razorpay_payment_id=razorpay_payment_id,
        **links,
    )


async def _grant_daily_pass(db, purchase, branch_id, mode, today, order_id, payment_id) -> EntitlementResult:
    days = purchase.custom_days
    package_name = f"{days} Day Pass"
    price = purchase.effective_gym_fee

    if purchase.custom_package_id is not None:
        result = await db.execute(
            select(CustomPackage).where(
                CustomPackage.id == purchase.custom_package_id,
                CustomPackage.branch_id == branch_id,
                CustomPackage.is_active == True
            )
        )
        package = result.scalar_one_or_none()
        if package is None:
            raise BusinessRuleError("Package not found for this branch")
        if package.duration_days != days:
            raise BusinessRuleError("Package duration does not match the purchase")
        package_name = package.name
        price = package.price

    trainer = None
    if purchase.trainer_id is not None:
        trainer = await _load_trainer(db, purchase.trainer_id, branch_id)

    details = purchase.member_details
    pass_user = DailyPassUser(
        branch_id=branch_id,
        name=purchase.member_name,
        phone=purchase.member_phone,
        gender=details.gender if details else None,
        address=details.address if details else None,
    )
    db.add(pass_user)
    await db.flush()

    end_date = today + timedelta(days=days)
    subscription = DailyPassSubscription(
        daily_pass_user_id=pass_user.id,
        branch_id=branch_id,
        package_id=purchase.custom_package_id,
        package_name=package_name,
        duration_days=days,
        start_date=today,
        end_date=end_date,
        price=price,
        trainer_id=purchase.trainer_id,
        trainer_fee=purchase.trainer_fee or 0,
    )
    db.add(subscription)
    await db.flush()

    payment = _new_payment(
        purchase, branch_id, mode,
        "gym_and_pt" if trainer else "daily_pass",
        order_id, payment_id,
        daily_pass_user_id=pass_user.id,
        daily_pass_subscription_id=subscription.id,
    )
    db.add(payment)
    await db.flush()

    links = {"daily_pass_user_id": pass_user.id, "payment_id": payment.id}
    if price > 0:
        db.add(_ledger_income(
            branch_id, "daily_pass",
            f"Daily Pass - {purchase.member_name} ({package_name})",
            price, today, **links,
        ))
    if trainer and purchase.trainer_fee:
        db.add(_ledger_income(
            branch_id, "pt_subscription",
            f"PT Subscription - {purchase.member_name} (Daily Pass)",
            purchase.trainer_fee, today, trainer_id=trainer.id, **links,
        ))
        expense = _trainer_percentage_expense(
            trainer, purchase.trainer_fee, purchase.member_name, today, **links
        )
        if expense:
            db.add(expense)

    return EntitlementResult(
        payment_id=payment.id,
        end_date=end_date,
        subscription_id=subscription.id,
        daily_pass_user_id=pass_user.id,
        is_daily_pass=True,
    )


async def _grant_pt_only(db, purchase, branch_id, mode, today, order_id, payment_id) -> EntitlementResult:
    member = await _resolve_member(db, purchase, branch_id)
    trainer = await _load_trainer(db, purchase.trainer_id, branch_id)

    start = await pt_start_date(db, member.id, trainer.id, today)
    end_date = start + timedelta(days=purchase.custom_days)
    total_fee = purchase.trainer_fee if purchase.trainer_fee is not None else purchase.amount

    pt_subscription = PTSubscription(
        member_id=member.id,
        trainer_id=trainer.id,
        branch_id=branch_id,
        start_date=start,
        end_date=end_date,
        monthly_fee=trainer.monthly_fee,
        total_fee=total_fee,
    )
    db.add(pt_subscription)
    await db.flush()

    payment = _new_payment(
        purchase, branch_id, mode, "pt", order_id, payment_id,
        member_id=member.id,
        pt_subscription_id=pt_subscription.id,
    )
    db.add(payment)
    await db.flush()

    links = {"member_id": member.id, "payment_id": payment.id, "pt_subscription_id": pt_subscription.id}
    db.add(_ledger_income(
        branch_id, "pt_subscription",
        f"PT Subscription - {purchase.member_name} with {trainer.name}",
        total_fee, today, trainer_id=trainer.id, **links,
    ))
    expense = _trainer_percentage_expense(trainer, total_fee, purchase.member_name, today, **links)
    if expense:
        db.add(expense)

    return EntitlementResult(
        payment_id=payment.id,
        end_date=end_date,
        subscription_id=pt_subscription.id,
        member_id=member.id,
        pt_subscription_id=pt_subscription.id,
    )


async def _grant_membership(db, purchase, branch_id, mode, today, order_id, payment_id) -> EntitlementResult:
    member = await _resolve_member(db, purchase, branch_id)
    trainer = None
    if purchase.trainer_id is not None:
        trainer = await _load_trainer(db, purchase.trainer_id, branch_id)

    start = await renewal_start_date(db, member.id, today)
    if purchase.months is not None:
        end_date = add_months(start, purchase.months)
    else:
        end_date = start + timedelta(days=purchase.custom_days)

    subscription = Subscription(
        member_id=member.id,
        branch_id=branch_id,
        start_date=start,
        end_date=end_date,
        plan_months=purchase.months,
        duration_days=purchase.custom_days,
    )
    db.add(subscription)
    await db.flush()

    pt_subscription = None
    if trainer:
        # Trainer add-on covers the same window as the membership
        pt_subscription = PTSubscription(
            member_id=member.id,
            trainer_id=trainer.id,
            branch_id=branch_id,
            start_date=start,
            end_date=end_date,
            monthly_fee=trainer.monthly_fee,
            total_fee=purchase.trainer_fee or 0,
        )
        db.add(pt_subscription)
        await db.flush()

    payment = _new_payment(
        purchase, branch_id, mode,
        "gym_and_pt" if trainer else "membership",
        order_id, payment_id,
        member_id=member.id,
        subscription_id=subscription.id,
        pt_subscription_id=pt_subscription.id if pt_subscription else None,
    )
    db.add(payment)
    await db.flush()

    links = {"member_id": member.id, "payment_id": payment.id}
    joining_fee = purchase.joining_fee or 0
    gym_income = purchase.effective_gym_fee - joining_fee
    duration = (
        f"{purchase.months} month{'s' if purchase.months > 1 else ''}"
        if purchase.months is not None else f"{purchase.custom_days} days"
    )
    if gym_income > 0:
        is_new = purchase.is_new_member
        db.add(_ledger_income(
            branch_id,
            "gym_membership" if is_new else "gym_renewal",
            f"{'New Membership' if is_new else 'Renewal'} - {purchase.member_name} ({duration})",
            gym_income, today, **links,
        ))
    if joining_fee > 0:
        db.add(_ledger_income(
            branch_id, "joining_fee",
            f"Joining Fee - {purchase.member_name}",
            joining_fee, today, **links,
        ))
    if trainer and purchase.trainer_fee:
        pt_links = dict(links, pt_subscription_id=pt_subscription.id)
        db.add(_ledger_income(
            branch_id, "pt_subscription",
            f"PT Subscription - {purchase.member_name} with {trainer.name}",
            purchase.trainer_fee, today, trainer_id=trainer.id, **pt_links,
        ))
        expense = _trainer_percentage_expense(
            trainer, purchase.trainer_fee, purchase.member_name, today, **pt_links
        )
        if expense:
            db.add(expense)

    return EntitlementResult(
        payment_id=payment.id,
        end_date=end_date,
        subscription_id=subscription.id,
        member_id=member.id,
        pt_subscription_id=pt_subscription.id if pt_subscription else None,
    )


async def grant_entitlement(
    db: AsyncSession,
    purchase: PurchaseIntent,
    branch_id: int,
    mode: PaymentMode,
    today: date,
    razorpay_order_id: Optional[str] = None,
    razorpay_payment_id: Optional[str] = None,
) -> EntitlementResult:
    """
    Write every row a purchase grants and commit once.

    Anything already staged on the session (e.g. the pending order status)
    is committed or rolled back together with the grant.

    Raises:
        BusinessRuleError: duplicate phone, unknown member/trainer/package
    """
    if purchase.is_daily_pass:
        grant = _grant_daily_pass
    elif purchase.is_pt_only:
        grant = _grant_pt_only
    else:
        grant = _grant_membership

    try:
        result = await grant(db, purchase, branch_id, mode, today, razorpay_order_id, razorpay_payment_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        f"Entitlement granted: payment {result.payment_id} ({mode.value}) "
        f"branch {branch_id}, ends {result.end_date.isoformat()}"
    )
    return result


async def result_for_payment(db: AsyncSession, payment: Payment) -> EntitlementResult:
    """Rebuild the grant answer from an already recorded payment"""
    if payment.daily_pass_subscription_id is not None:
        subscription = await db.get(DailyPassSubscription, payment.daily_pass_subscription_id)
        return EntitlementResult(
            payment_id=payment.id,
            end_date=subscription.end_date,
            subscription_id=subscription.id,
            daily_pass_user_id=payment.daily_pass_user_id,
            is_daily_pass=True,
        )

    if payment.subscription_id is not None:
        subscription = await db.get(Subscription, payment.subscription_id)
        return EntitlementResult(
            payment_id=payment.id,
            end_date=subscription.end_date,
            subscription_id=subscription.id,
            member_id=payment.member_id,
            pt_subscription_id=payment.pt_subscription_id,
        )

    pt_subscription = await db.get(PTSubscription, payment.pt_subscription_id)
    return EntitlementResult(
        payment_id=payment.id,
        end_date=pt_subscription.end_date,
        subscription_id=pt_subscription.id,
        member_id=payment.member_id,
        pt_subscription_id=pt_subscription.id,
    )
