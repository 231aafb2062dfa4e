"""Purchase intent rules and amount helpers"""

import pytest

from payment_errors import PurchaseValidationError
from purchase_validation import (
    parse_purchase_intent, to_minor_units, calculate_package_amount,
)


def _intent(**overrides):
    data = {
        "amount": 1700,
        "memberName": "Priya Sharma",
        "memberPhone": "9876543210",
        "isNewMember": True,
        "months": 3,
        "branchId": 1,
    }
    data.update(overrides)
    return {k: v for k, v in data.items() if v is not None}


class TestPurchaseIntent:
    def test_valid_new_member(self):
        intent = parse_purchase_intent(_intent())
        assert intent.member_name == "Priya Sharma"
        assert intent.months == 3
        assert intent.branch_id == 1
        assert not intent.is_pt_only

    def test_name_is_trimmed(self):
        intent = parse_purchase_intent(_intent(memberName="  O'Brien-Smith  "))
        assert intent.member_name == "O'Brien-Smith"

    @pytest.mark.parametrize("name", ["A", "Priya123", "x" * 101, "Robert; DROP"])
    def test_bad_names(self, name):
        with pytest.raises(PurchaseValidationError) as exc:
            parse_purchase_intent(_intent(memberName=name))
        assert exc.value.field == "memberName"

    @pytest.mark.parametrize("phone", ["5876543210", "987654321", "98765432100", "+919876543210"])
    def test_bad_phones(self, phone):
        with pytest.raises(PurchaseValidationError) as exc:
            parse_purchase_intent(_intent(memberPhone=phone))
        assert exc.value.field == "memberPhone"
        assert exc.value.message.startswith("Validation failed: memberPhone:")

    @pytest.mark.parametrize("amount", [0, -10, 1_000_001])
    def test_amount_bounds(self, amount):
        with pytest.raises(PurchaseValidationError) as exc:
            parse_purchase_intent(_intent(amount=amount))
        assert exc.value.field == "amount"

    def test_amount_upper_bound_inclusive(self):
        assert parse_purchase_intent(_intent(amount=1_000_000)).amount == 1_000_000

    @pytest.mark.parametrize("field,value", [
        ("amount", 0.004),
        ("amount", 1699.999),
        ("gymFee", 1500.125),
        ("joiningFee", 0.001),
    ])
    def test_sub_paisa_amounts_rejected(self, field, value):
        with pytest.raises(PurchaseValidationError) as exc:
            parse_purchase_intent(_intent(**{"gymFee": 1500, field: value}))
        assert exc.value.field == field

    def test_sub_paisa_trainer_fee_rejected(self):
        with pytest.raises(PurchaseValidationError) as exc:
            parse_purchase_intent(_intent(trainerId=1, trainerFee=499.995))
        assert exc.value.field == "trainerFee"

    def test_two_decimal_places_allowed(self):
        assert parse_purchase_intent(_intent(amount=1699.99)).amount == 1699.99

    @pytest.mark.parametrize("months", [0, 25])
    def test_months_range(self, months):
        with pytest.raises(PurchaseValidationError):
            parse_purchase_intent(_intent(months=months))

    @pytest.mark.parametrize("days", [0, 366])
    def test_custom_days_range(self, days):
        with pytest.raises(PurchaseValidationError):
            parse_purchase_intent(_intent(months=None, customDays=days))

    def test_months_and_custom_days_are_exclusive(self):
        with pytest.raises(PurchaseValidationError) as exc:
            parse_purchase_intent(_intent(customDays=30))
        assert "mutually exclusive" in exc.value.message

    def test_duration_required(self):
        with pytest.raises(PurchaseValidationError) as exc:
            parse_purchase_intent(_intent(months=None))
        assert exc.value.field == "purchase"

    def test_existing_member_needs_id(self):
        with pytest.raises(PurchaseValidationError) as exc:
            parse_purchase_intent(_intent(isNewMember=False))
        assert "memberId" in exc.value.message

    def test_trainer_fee_needs_trainer(self):
        with pytest.raises(PurchaseValidationError):
            parse_purchase_intent(_intent(trainerFee=500))

    def test_trainer_fee_ceiling(self):
        with pytest.raises(PurchaseValidationError) as exc:
            parse_purchase_intent(_intent(amount=600_000, trainerId=1, trainerFee=500_001))
        assert exc.value.field == "trainerFee"

    def test_joining_fee_cannot_exceed_gym_fee(self):
        with pytest.raises(PurchaseValidationError):
            parse_purchase_intent(_intent(gymFee=100, joiningFee=200))

    def test_daily_pass_sold_in_days(self):
        with pytest.raises(PurchaseValidationError):
            parse_purchase_intent(_intent(isDailyPass=True))
        intent = parse_purchase_intent(_intent(isDailyPass=True, isNewMember=False, months=None, customDays=7))
        assert intent.is_daily_pass
        assert not intent.is_pt_only

    def test_pt_only_purchase(self):
        intent = parse_purchase_intent(
            _intent(isNewMember=False, memberId=4, months=None, customDays=30, trainerId=2, trainerFee=1700)
        )
        assert intent.is_pt_only

    def test_notes_are_strings(self):
        notes = parse_purchase_intent(_intent(trainerId=2, trainerFee=500)).to_notes()
        assert notes["member_id"] == "new"
        assert notes["months"] == "3"
        assert notes["trainer_fee"] == "500.0"
        assert all(isinstance(value, str) for value in notes.values())

    def test_fingerprint_ignores_display_fields(self):
        first = parse_purchase_intent(_intent())
        second = parse_purchase_intent(_intent(memberName="Priya S", memberDetails={"gender": "female"}))
        assert first.fingerprint() == second.fingerprint()
        third = parse_purchase_intent(_intent(months=6))
        assert first.fingerprint() != third.fingerprint()


class TestAmounts:
    def test_package_amount(self):
        assert calculate_package_amount(2999.5, joining_fee=500) == 3499.5

    @pytest.mark.parametrize("rupees,paise", [
        (1700, 170000),
        (19.99, 1999),
        (0.005, 1),
        (1_000_000, 100_000_000),
    ])
    def test_minor_units(self, rupees, paise):
        assert to_minor_units(rupees) == paise
