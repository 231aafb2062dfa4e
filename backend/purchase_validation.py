"""
Purchase intent validation.

The same rules run when an order is created and again when the checkout
callback is verified, so a client cannot slip different values past the
second step.
"""

import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple, Any, Dict

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from config import settings
from payment_errors import PurchaseValidationError


NAME_PATTERN = re.compile(r"^[a-zA-Z\s.'\-]+$")
PHONE_PATTERN = re.compile(r"^[6-9]\d{9}$")

MIN_MONTHS, MAX_MONTHS = 1, 24
MIN_CUSTOM_DAYS, MAX_CUSTOM_DAYS = 1, 365


def check_whole_paise(v: float) -> None:
    """Amounts are whole paise: at most two decimal places"""
    exponent = Decimal(str(v)).as_tuple().exponent
    if not isinstance(exponent, int) or exponent < -2:
        raise ValueError("must have at most two decimal places")


class MemberDetails(BaseModel):
    """Optional profile fields captured on the registration form"""
    gender: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = Field(None, max_length=500)


class PurchaseIntent(BaseModel):
    """
    What the purchaser intends to buy.

    Wire format is camelCase (memberName, customDays, ...). Exactly one of
    months / customDays sets the duration. A trainer add-on runs for the same
    window as the membership.
    """
    amount: float
    member_id: Optional[int] = None
    member_name: str
    member_phone: str
    is_new_member: bool = False
    months: Optional[int] = None
    custom_days: Optional[int] = None
    trainer_id: Optional[int] = None
    trainer_fee: Optional[float] = None
    branch_id: Optional[int] = None
    is_daily_pass: bool = False
    custom_package_id: Optional[int] = None
    gym_fee: Optional[float] = None
    joining_fee: Optional[float] = None
    member_details: Optional[MemberDetails] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @field_validator("member_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2 or len(v) > 100:
            raise ValueError("must be 2-100 characters")
        if not NAME_PATTERN.match(v):
            raise ValueError("only letters, spaces, dots, hyphens, and apostrophes allowed")
        return v

    @field_validator("member_phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if not PHONE_PATTERN.match(v):
            raise ValueError("must be a valid 10-digit mobile number starting with 6-9")
        return v

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: float) -> float:
        if v <= 0 or v > settings.MAX_ORDER_AMOUNT:
            raise ValueError(f"must be positive and at most {settings.MAX_ORDER_AMOUNT:,.0f}")
        check_whole_paise(v)
        return v

    @field_validator("months")
    @classmethod
    def validate_months(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not (MIN_MONTHS <= v <= MAX_MONTHS):
            raise ValueError(f"must be between {MIN_MONTHS} and {MAX_MONTHS}")
        return v

    @field_validator("custom_days")
    @classmethod
    def validate_custom_days(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not (MIN_CUSTOM_DAYS <= v <= MAX_CUSTOM_DAYS):
            raise ValueError(f"must be between {MIN_CUSTOM_DAYS} and {MAX_CUSTOM_DAYS}")
        return v

    @field_validator("trainer_fee")
    @classmethod
    def validate_trainer_fee(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and (v < 0 or v > settings.MAX_TRAINER_FEE):
            raise ValueError(f"must be at least 0 and at most {settings.MAX_TRAINER_FEE:,.0f}")
        if v is not None:
            check_whole_paise(v)
        return v

    @field_validator("gym_fee", "joining_fee")
    @classmethod
    def validate_fee(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and (v < 0 or v > settings.MAX_ORDER_AMOUNT):
            raise ValueError(f"must be at least 0 and at most {settings.MAX_ORDER_AMOUNT:,.0f}")
        if v is not None:
            check_whole_paise(v)
        return v

    @model_validator(mode="after")
    def validate_combination(self):
        if self.months is not None and self.custom_days is not None:
            raise ValueError("months and customDays are mutually exclusive")
        if self.months is None and self.custom_days is None:
            raise ValueError("either months or customDays is required")
        if self.is_daily_pass and self.months is not None:
            raise ValueError("a daily pass is sold in days, not months")
        if not self.is_new_member and not self.is_daily_pass and self.member_id is None:
            raise ValueError("memberId is required for an existing member")
        if self.trainer_fee and self.trainer_id is None:
            raise ValueError("trainerFee requires trainerId")
        if self.joining_fee and self.gym_fee is not None and self.joining_fee > self.gym_fee:
            raise ValueError("joiningFee cannot exceed gymFee")
        if (self.trainer_fee or 0) > self.amount:
            raise ValueError("trainerFee cannot exceed amount")
        return self

    @property
    def is_pt_only(self) -> bool:
        """Trainer sessions bought in days by an existing member, no gym window"""
        return (
            not self.is_daily_pass
            and self.trainer_id is not None
            and self.custom_days is not None
        )

    @property
    def effective_gym_fee(self) -> float:
        if self.gym_fee is not None:
            return self.gym_fee
        return max(self.amount - (self.trainer_fee or 0), 0)

    def to_notes(self) -> Dict[str, str]:
        """Gateway order notes. Values are strings as the gateway stores them."""
        return {
            "member_id": str(self.member_id) if self.member_id else "new",
            "member_name": self.member_name,
            "member_phone": self.member_phone,
            "is_new_member": str(self.is_new_member).lower(),
            "is_daily_pass": str(self.is_daily_pass).lower(),
            "months": str(self.months or ""),
            "custom_days": str(self.custom_days or ""),
            "trainer_id": str(self.trainer_id or ""),
            "trainer_fee": str(self.trainer_fee or 0),
            "branch_id": str(self.branch_id or ""),
        }

    def fingerprint(self) -> Dict[str, Any]:
        """Business fields that must not change between order and verification"""
        return self.model_dump(
            include={
                "amount", "member_id", "member_phone", "is_new_member", "months",
                "custom_days", "trainer_id", "trainer_fee", "branch_id",
                "is_daily_pass", "custom_package_id",
            }
        )


def describe_validation_error(exc: ValidationError) -> Tuple[str, str]:
    """First error of a pydantic ValidationError as (field, message)"""
    error = exc.errors()[0]
    loc = [str(part) for part in error.get("loc", ()) if part != "body"]
    field = ".".join(loc) or "purchase"
    message = error.get("msg", "invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return field, message


def parse_purchase_intent(data: Dict[str, Any]) -> PurchaseIntent:
    """Validate a raw payload, raising PurchaseValidationError with the offending field"""
    try:
        return PurchaseIntent.model_validate(data)
    except ValidationError as e:
        field, message = describe_validation_error(e)
        raise PurchaseValidationError(field, message)


def to_minor_units(amount: float) -> int:
    """Rupees to paise, half-up so 0.005 never silently drops a paisa"""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_package_amount(package_price: float, joining_fee: float = 0, trainer_fee: float = 0) -> float:
    """Total payable for a fixed-price monthly or custom package"""
    return float(Decimal(str(package_price)) + Decimal(str(joining_fee)) + Decimal(str(trainer_fee)))
