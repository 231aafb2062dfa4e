"""Entitlement Writer: members, subscription windows, payments and ledger rows"""

from datetime import date

import pytest
from sqlalchemy import select

from entitlements import add_months, grant_entitlement, renewal_start_date
from models import (
    Member, Subscription, PTSubscription, DailyPassUser, DailyPassSubscription,
    Payment, PaymentMode, PaymentStatus, LedgerEntry, LedgerEntryType,
)
from payment_errors import BusinessRuleError
from purchase_validation import parse_purchase_intent

TODAY = date(2025, 6, 20)


async def _ledger(db):
    result = await db.execute(select(LedgerEntry).order_by(LedgerEntry.id))
    return result.scalars().all()


class TestAddMonths:
    @pytest.mark.parametrize("start,months,expected", [
        (date(2025, 1, 15), 3, date(2025, 4, 15)),
        (date(2025, 1, 31), 1, date(2025, 2, 28)),
        (date(2024, 1, 31), 1, date(2024, 2, 29)),
        (date(2025, 11, 30), 3, date(2026, 2, 28)),
        (date(2025, 7, 1), 12, date(2026, 7, 1)),
    ])
    def test_add_months(self, start, months, expected):
        assert add_months(start, months) == expected


@pytest.mark.asyncio
class TestRenewalStart:
    async def test_continues_after_running_subscription(self, db, gym, add_member):
        member = await add_member(gym.branch.id, subscription_end=date(2025, 6, 30))
        assert await renewal_start_date(db, member.id, TODAY) == date(2025, 7, 1)

    async def test_expired_subscription_starts_today(self, db, gym, add_member):
        member = await add_member(gym.branch.id, subscription_end=date(2025, 5, 1))
        assert await renewal_start_date(db, member.id, TODAY) == TODAY

    async def test_no_subscription_starts_today(self, db, gym, add_member):
        member = await add_member(gym.branch.id)
        assert await renewal_start_date(db, member.id, TODAY) == TODAY


@pytest.mark.asyncio
class TestGrantEntitlement:
    async def test_new_membership(self, db, gym, intent_payload):
        purchase = parse_purchase_intent(intent_payload())

        result = await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.CASH, TODAY)

        assert result.end_date == date(2025, 9, 20)
        member = await db.get(Member, result.member_id)
        assert member.name == "Priya Sharma"
        subscription = await db.get(Subscription, result.subscription_id)
        assert subscription.start_date == TODAY
        assert subscription.plan_months == 3

        payment = await db.get(Payment, result.payment_id)
        assert payment.status == PaymentStatus.SUCCESS
        assert payment.payment_mode == PaymentMode.CASH
        assert payment.payment_type == "membership"
        assert payment.razorpay_payment_id is None

        entries = await _ledger(db)
        assert [(e.category, e.amount) for e in entries] == [("gym_membership", 1500), ("joining_fee", 200)]
        assert all(e.is_auto_generated and e.entry_type == LedgerEntryType.INCOME for e in entries)
        assert all(e.payment_id == payment.id for e in entries)

    async def test_renewal_starts_after_current_window(self, db, gym, add_member):
        member = await add_member(gym.branch.id, subscription_end=date(2025, 6, 30))
        purchase = parse_purchase_intent({
            "amount": 800, "memberId": member.id, "memberName": member.name,
            "memberPhone": member.phone, "months": 1, "branchId": gym.branch.id,
        })

        result = await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.ONLINE, TODAY,
                                         razorpay_order_id="order_A", razorpay_payment_id="pay_A")

        subscription = await db.get(Subscription, result.subscription_id)
        assert subscription.start_date == date(2025, 7, 1)
        assert subscription.end_date == date(2025, 8, 1)
        entries = await _ledger(db)
        assert [(e.category, e.amount) for e in entries] == [("gym_renewal", 800)]

    async def test_custom_days_membership(self, db, gym, intent_payload):
        purchase = parse_purchase_intent(intent_payload(months=None, customDays=45, joiningFee=None))

        result = await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.CASH, TODAY)

        subscription = await db.get(Subscription, result.subscription_id)
        assert subscription.duration_days == 45
        assert result.end_date == date(2025, 8, 4)

    async def test_trainer_add_on_with_percentage_expense(self, db, gym, add_trainer, intent_payload):
        trainer = await add_trainer(gym.branch.id, payment_category="monthly_percentage", percentage_fee=40)
        purchase = parse_purchase_intent(intent_payload(
            amount=2700, gymFee=1700, joiningFee=200, trainerId=trainer.id, trainerFee=1000,
        ))

        result = await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.CASH, TODAY)

        pt = await db.get(PTSubscription, result.pt_subscription_id)
        assert (pt.start_date, pt.end_date) == (TODAY, result.end_date)
        assert pt.total_fee == 1000
        payment = await db.get(Payment, result.payment_id)
        assert payment.payment_type == "gym_and_pt"

        entries = await _ledger(db)
        assert [(e.entry_type, e.category, e.amount) for e in entries] == [
            (LedgerEntryType.INCOME, "gym_membership", 1500),
            (LedgerEntryType.INCOME, "joining_fee", 200),
            (LedgerEntryType.INCOME, "pt_subscription", 1000),
            (LedgerEntryType.EXPENSE, "trainer_percentage", 400),
        ]
        assert entries[-1].trainer_id == trainer.id

    async def test_salaried_trainer_has_no_expense_row(self, db, gym, add_trainer, intent_payload):
        trainer = await add_trainer(gym.branch.id)
        purchase = parse_purchase_intent(intent_payload(
            amount=2700, gymFee=1700, trainerId=trainer.id, trainerFee=1000,
        ))

        await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.CASH, TODAY)

        entries = await _ledger(db)
        assert LedgerEntryType.EXPENSE not in {e.entry_type for e in entries}

    async def test_pt_only(self, db, gym, add_member, add_trainer):
        member = await add_member(gym.branch.id)
        trainer = await add_trainer(gym.branch.id)
        purchase = parse_purchase_intent({
            "amount": 2000, "memberId": member.id, "memberName": member.name,
            "memberPhone": member.phone, "customDays": 30, "trainerId": trainer.id,
            "trainerFee": 2000, "branchId": gym.branch.id,
        })

        result = await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.CASH, TODAY)

        assert result.subscription_id == result.pt_subscription_id
        assert result.end_date == date(2025, 7, 20)
        payment = await db.get(Payment, result.payment_id)
        assert payment.payment_type == "pt"
        assert payment.subscription_id is None
        entries = await _ledger(db)
        assert [(e.category, e.amount) for e in entries] == [("pt_subscription", 2000)]

    async def test_daily_pass(self, db, gym, count):
        purchase = parse_purchase_intent({
            "amount": 300, "memberName": "Walk In", "memberPhone": "9123456780",
            "isDailyPass": True, "customDays": 7, "branchId": gym.branch.id,
            "memberDetails": {"gender": "male"},
        })

        result = await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.CASH, TODAY)

        response = result.to_response()
        assert response["isDailyPass"] is True
        assert response["endDate"] == "2025-06-27"
        pass_user = await db.get(DailyPassUser, result.daily_pass_user_id)
        assert pass_user.gender == "male"
        subscription = await db.get(DailyPassSubscription, result.subscription_id)
        assert subscription.package_name == "7 Day Pass"
        payment = await db.get(Payment, result.payment_id)
        assert payment.payment_type == "daily_pass"
        assert await count(Member) == 0
        entries = await _ledger(db)
        assert [(e.category, e.amount) for e in entries] == [("daily_pass", 300)]

    async def test_duplicate_phone_rolls_back_everything(self, db, gym, add_member, intent_payload, count):
        await add_member(gym.branch.id, phone="9876543210")
        purchase = parse_purchase_intent(intent_payload())

        with pytest.raises(BusinessRuleError) as exc:
            await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.CASH, TODAY)

        assert exc.value.message == "Member with this phone already exists"
        assert await count(Member) == 1
        assert await count(Payment) == 0
        assert await count(LedgerEntry) == 0

    async def test_unknown_trainer_rolls_back_new_member(self, db, gym, intent_payload, count):
        purchase = parse_purchase_intent(intent_payload(amount=2700, trainerId=999, trainerFee=1000))

        with pytest.raises(BusinessRuleError):
            await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.CASH, TODAY)

        assert await count(Member) == 0
        assert await count(Subscription) == 0

    async def test_member_from_other_branch_rejected(self, db, gym, make_gym, add_member):
        other = await make_gym(slug="other-gym")
        stranger = await add_member(other.branch.id)
        purchase = parse_purchase_intent({
            "amount": 800, "memberId": stranger.id, "memberName": stranger.name,
            "memberPhone": stranger.phone, "months": 1, "branchId": gym.branch.id,
        })

        with pytest.raises(BusinessRuleError) as exc:
            await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.CASH, TODAY)
        assert exc.value.message == "Member not found for this branch"
