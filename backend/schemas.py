from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List, Dict
from datetime import datetime, date
from models import PaymentMode, PaymentStatus, LedgerEntryType, UserRole
from purchase_validation import NAME_PATTERN, PHONE_PATTERN, MIN_MONTHS, MAX_MONTHS, MIN_CUSTOM_DAYS, MAX_CUSTOM_DAYS, check_whole_paise


# ============================================================================
# PAYMENT ORDERS
# ============================================================================

class CreateOrderResponse(BaseModel):
    orderId: str
    amount: int  # paise
    currency: str
    keyId: str


class VerifyPaymentResponse(BaseModel):
    success: bool
    memberId: Optional[int] = None
    dailyPassUserId: Optional[int] = None
    subscriptionId: Optional[int] = None
    ptSubscriptionId: Optional[int] = None
    endDate: str
    isDailyPass: Optional[bool] = None


# ============================================================================
# GATEWAY CREDENTIALS
# ============================================================================

class CredentialSaveRequest(BaseModel):
    keyId: str = Field(..., min_length=1, max_length=100)
    keySecret: str = Field(..., min_length=1, max_length=200)
    branchId: Optional[int] = None  # None = tenant-wide credential


class CredentialStatusResponse(BaseModel):
    connected: bool
    keyIdMasked: Optional[str] = None
    isVerified: bool = False
    verifiedAt: Optional[datetime] = None
    source: str


# ============================================================================
# BRANCHES
# ============================================================================

class BranchCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    address: Optional[str] = None
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None


class BranchUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    address: Optional[str] = None
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None
    is_active: Optional[bool] = None


class BranchResponse(BaseModel):
    id: int
    tenant_id: int
    name: str
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    is_default: bool
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


# ============================================================================
# STAFF PERMISSIONS
# ============================================================================

class StaffPermissionUpdate(BaseModel):
    can_manage_members: Optional[bool] = None
    can_access_ledger: Optional[bool] = None
    can_access_payments: Optional[bool] = None
    can_access_analytics: Optional[bool] = None
    can_change_settings: Optional[bool] = None
    branch_ids: Optional[List[int]] = None  # [] lifts the branch restriction


class StaffPermissionResponse(BaseModel):
    user_id: int
    tenant_id: int
    can_manage_members: bool
    can_access_ledger: bool
    can_access_payments: bool
    can_access_analytics: bool
    can_change_settings: bool
    branch_ids: List[int] = []


# ============================================================================
# TENANT PROVISIONING (super admin)
# ============================================================================

class TenantLimitsPayload(BaseModel):
    max_branches: Optional[int] = Field(None, ge=1, le=1000)
    max_staff_per_branch: Optional[int] = Field(None, ge=0, le=1000)
    max_members: Optional[int] = Field(None, ge=0, le=1_000_000)
    max_trainers: Optional[int] = Field(None, ge=0, le=10_000)
    max_monthly_whatsapp_messages: Optional[int] = Field(None, ge=0, le=10_000_000)
    features: Optional[Dict[str, bool]] = None
    plan_expiry_date: Optional[date] = None


class TenantCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    slug: str = Field(..., min_length=2, max_length=50, pattern="^[a-z0-9-]+$")
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=20)
    timezone: str = "Asia/Kolkata"
    owner_email: EmailStr
    owner_password: str = Field(..., min_length=8, max_length=72)
    owner_name: str = Field(..., min_length=2, max_length=100)
    limits: Optional[TenantLimitsPayload] = None


class TenantLimitsResponse(BaseModel):
    max_branches: int
    max_staff_per_branch: int
    max_members: int
    max_trainers: int
    max_monthly_whatsapp_messages: int
    whatsapp_messages_used: int
    features: Dict[str, bool]
    plan_expiry_date: Optional[date] = None


class TenantUsage(BaseModel):
    branches: int
    staff: int
    members: int
    trainers: int
    whatsapp_messages: int


class TenantSummary(BaseModel):
    id: int
    name: str
    slug: str
    is_active: bool
    deleted_at: Optional[datetime] = None
    created_at: datetime
    limits: Optional[TenantLimitsResponse] = None
    usage: Optional[TenantUsage] = None


class LimitCheckResponse(BaseModel):
    resource: str
    allowed: bool
    current: int
    limit: int


# ============================================================================
# GYM DATA
# ============================================================================

class TrainerPublic(BaseModel):
    """Only what an unauthenticated registration form may show"""
    id: int
    name: str
    monthly_fee: float

    class Config:
        from_attributes = True


class TrainerResponse(TrainerPublic):
    phone: Optional[str] = None
    specialization: Optional[str] = None
    payment_category: Optional[str] = None
    percentage_fee: float
    is_active: bool


class MonthlyPackageResponse(BaseModel):
    id: int
    months: int
    price: float
    joining_fee: float

    class Config:
        from_attributes = True


class CustomPackageResponse(BaseModel):
    id: int
    name: str
    duration_days: int
    price: float

    class Config:
        from_attributes = True


class BranchPublic(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class GymSettingsResponse(BaseModel):
    branch_id: int
    gym_name: Optional[str] = None
    gym_phone: Optional[str] = None
    gym_address: Optional[str] = None
    whatsapp_enabled: bool = False

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    id: int
    branch_id: int
    member_id: Optional[int] = None
    daily_pass_user_id: Optional[int] = None
    subscription_id: Optional[int] = None
    amount: float
    payment_mode: PaymentMode
    status: PaymentStatus
    payment_type: str
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class LedgerEntryResponse(BaseModel):
    id: int
    branch_id: int
    entry_type: LedgerEntryType
    category: str
    description: str
    amount: float
    entry_date: date
    is_auto_generated: bool

    class Config:
        from_attributes = True


class StaffMemberResponse(BaseModel):
    user_id: int
    email: str
    full_name: str
    role: UserRole


# ============================================================================
# STAFF OPERATIONS
# ============================================================================

def _price(v: Optional[float]) -> Optional[float]:
    if v is not None:
        check_whole_paise(v)
    return v


class MonthlyPackageCreate(BaseModel):
    months: int = Field(..., ge=MIN_MONTHS, le=MAX_MONTHS)
    price: float = Field(..., gt=0, le=1_000_000)
    joining_fee: float = Field(0, ge=0, le=1_000_000)

    @field_validator("price", "joining_fee")
    @classmethod
    def validate_prices(cls, v):
        return _price(v)


class MonthlyPackageUpdate(BaseModel):
    months: Optional[int] = Field(None, ge=MIN_MONTHS, le=MAX_MONTHS)
    price: Optional[float] = Field(None, gt=0, le=1_000_000)
    joining_fee: Optional[float] = Field(None, ge=0, le=1_000_000)
    is_active: Optional[bool] = None

    @field_validator("price", "joining_fee")
    @classmethod
    def validate_prices(cls, v):
        return _price(v)


class CustomPackageCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    duration_days: int = Field(..., ge=MIN_CUSTOM_DAYS, le=MAX_CUSTOM_DAYS)
    price: float = Field(..., gt=0, le=1_000_000)

    @field_validator("price")
    @classmethod
    def validate_price(cls, v):
        return _price(v)


class CustomPackageUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    duration_days: Optional[int] = Field(None, ge=MIN_CUSTOM_DAYS, le=MAX_CUSTOM_DAYS)
    price: Optional[float] = Field(None, gt=0, le=1_000_000)
    is_active: Optional[bool] = None

    @field_validator("price")
    @classmethod
    def validate_price(cls, v):
        return _price(v)


class PackageAdminResponse(BaseModel):
    id: int
    branch_id: int
    months: Optional[int] = None
    name: Optional[str] = None
    duration_days: Optional[int] = None
    price: float
    joining_fee: Optional[float] = None
    is_active: bool

    class Config:
        from_attributes = True


class GymSettingsUpdate(BaseModel):
    gym_name: Optional[str] = Field(None, min_length=2, max_length=100)
    gym_phone: Optional[str] = Field(None, max_length=20)
    gym_address: Optional[str] = Field(None, max_length=500)
    whatsapp_enabled: Optional[bool] = None


class MemberUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if len(v) < 2 or len(v) > 100 or not NAME_PATTERN.match(v):
            raise ValueError("must be 2-100 letters, spaces, dots, hyphens, or apostrophes")
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not PHONE_PATTERN.match(v):
            raise ValueError("must be a valid 10-digit mobile number starting with 6-9")
        return v


class MemberResponse(BaseModel):
    id: int
    branch_id: int
    name: str
    phone: str
    email: Optional[str] = None

    class Config:
        from_attributes = True


class LedgerEntryCreate(BaseModel):
    entry_type: LedgerEntryType
    category: str = Field(..., min_length=2, max_length=50)
    description: str = Field(..., min_length=2, max_length=500)
    amount: float = Field(..., gt=0, le=1_000_000)
    entry_date: Optional[date] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        return _price(v)


class InvoiceResponse(BaseModel):
    invoice_number: str
    gym_name: str
    gym_address: str = ""
    gym_phone: str = ""
    branch_name: str
    customer_name: str
    customer_phone: str = ""
    payment_date: date
    payment_mode: str
    payment_type: str
    razorpay_payment_id: Optional[str] = None
    package_name: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    gym_fee: float
    trainer_fee: float
    amount: float


class CheckInRequest(BaseModel):
    member_id: Optional[int] = None
    phone: Optional[str] = Field(None, max_length=15)


class CheckInResponse(BaseModel):
    status: str  # checked_in, checked_out, expired, duplicate
    message: str
    member_id: int
    member_name: str
    attendance_id: int
    check_in_at: datetime
    check_out_at: Optional[datetime] = None
    subscription_status: str
