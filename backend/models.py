from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Boolean, Text, Enum as SQLEnum, Table, UniqueConstraint, Index, Date, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from database import Base


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    STAFF = "staff"


class StaffCapability(str, enum.Enum):
    """Capabilities a tenant admin can grant to a staff account"""
    MANAGE_MEMBERS = "can_manage_members"
    ACCESS_LEDGER = "can_access_ledger"
    ACCESS_PAYMENTS = "can_access_payments"
    ACCESS_ANALYTICS = "can_access_analytics"
    CHANGE_SETTINGS = "can_change_settings"


class FeatureModule(str, enum.Enum):
    """Plan-level feature modules toggled per tenant by the super admin"""
    MEMBERS_MANAGEMENT = "members_management"
    ATTENDANCE = "attendance"
    PAYMENTS_BILLING = "payments_billing"
    STAFF_MANAGEMENT = "staff_management"
    REPORTS_ANALYTICS = "reports_analytics"
    WORKOUT_DIET_PLANS = "workout_diet_plans"
    NOTIFICATIONS = "notifications"
    INTEGRATIONS = "integrations"
    LEADS_CRM = "leads_crm"


# Modules enabled when a tenant's feature map does not mention them
DEFAULT_FEATURES = {
    FeatureModule.MEMBERS_MANAGEMENT: True,
    FeatureModule.ATTENDANCE: True,
    FeatureModule.PAYMENTS_BILLING: True,
    FeatureModule.STAFF_MANAGEMENT: True,
    FeatureModule.REPORTS_ANALYTICS: True,
    FeatureModule.WORKOUT_DIET_PLANS: False,
    FeatureModule.NOTIFICATIONS: True,
    FeatureModule.INTEGRATIONS: True,
    FeatureModule.LEADS_CRM: False,
}


class PaymentMode(str, enum.Enum):
    CASH = "cash"
    ONLINE = "online"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class PaymentOrderStatus(str, enum.Enum):
    CREATED = "created"
    PAID = "paid"


class LedgerEntryType(str, enum.Enum):
    INCOME = "income"
    EXPENSE = "expense"


# Association table for many-to-many relationship between User and Tenant
tenant_members = Table(
    'tenant_members',
    Base.metadata,
    Column('id', Integer, primary_key=True),
    Column('tenant_id', Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
    Column('user_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('role', SQLEnum(UserRole), default=UserRole.STAFF, nullable=False),
    Column('is_owner', Boolean, default=False),
    Column('is_active', Boolean, default=True),
    Column('joined_at', DateTime, default=datetime.utcnow),
    UniqueConstraint('tenant_id', 'user_id', name='uq_tenant_member'),
    Index('idx_tenant_members_user', 'user_id'),
)


# Branches a staff member is restricted to (no rows = every branch of the tenant)
staff_branch_access = Table(
    'staff_branch_access',
    Base.metadata,
    Column('staff_permission_id', Integer, ForeignKey('staff_permissions.id', ondelete='CASCADE'), primary_key=True),
    Column('branch_id', Integer, ForeignKey('branches.id', ondelete='CASCADE'), primary_key=True),
)


class Tenant(Base):
    """A gym organization subscribing to the platform"""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    slug = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(100))
    phone = Column(String(20))
    timezone = Column(String(50), default="Asia/Kolkata")
    is_active = Column(Boolean, default=True)

    # Soft delete - tenants are never hard-deleted
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    branches = relationship("Branch", back_populates="tenant", cascade="all, delete-orphan")
    limits = relationship("TenantLimits", back_populates="tenant", uselist=False, cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Tenant {self.name} ({self.slug})>"


class TenantLimits(Base):
    """Resource limits, feature modules and plan expiry for a tenant"""
    __tablename__ = "tenant_limits"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), unique=True, nullable=False)
    max_branches = Column(Integer, default=3, nullable=False)
    max_staff_per_branch = Column(Integer, default=10, nullable=False)
    max_members = Column(Integer, default=1000, nullable=False)
    max_trainers = Column(Integer, default=20, nullable=False)
    max_monthly_whatsapp_messages = Column(Integer, default=500, nullable=False)
    whatsapp_messages_used = Column(Integer, default=0, nullable=False)
    features = Column(JSON, nullable=True)  # {"payments_billing": true, ...}
    plan_expiry_date = Column(Date, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="limits")

    def is_module_enabled(self, module: FeatureModule) -> bool:
        features = self.features or {}
        return bool(features.get(module.value, DEFAULT_FEATURES[module]))

    def __repr__(self):
        return f"<TenantLimits Tenant:{self.tenant_id} Expiry:{self.plan_expiry_date}>"


class Branch(Base):
    """Physical gym location belonging to exactly one tenant"""
    __tablename__ = "branches"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    address = Column(Text)
    phone = Column(String(20))
    email = Column(String(100))
    is_default = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="branches")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'name', name='uq_branch_tenant_name'),
    )

    def __repr__(self):
        return f"<Branch {self.name} (Tenant: {self.tenant_id})>"


class GatewayCredential(Base):
    """
    Razorpay key pair for a gym.

    Tenant-level when branch_id is NULL, otherwise an override for one branch.
    The secret is stored AES-GCM encrypted and never returned to clients.
    """
    __tablename__ = "razorpay_credentials"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=True, index=True)
    key_id = Column(String(100), nullable=False)
    encrypted_key_secret = Column(Text, nullable=False)
    encryption_iv = Column(String(64), nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    verified_at = Column(DateTime, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'branch_id', name='uq_credential_scope'),
    )

    def __repr__(self):
        return f"<GatewayCredential Tenant:{self.tenant_id} Branch:{self.branch_id} Verified:{self.is_verified}>"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(100), unique=True, nullable=False, index=True)
    hashed_password = Column(String(255), nullable=True)
    full_name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True)
    is_super_admin = Column(Boolean, default=False, nullable=False)  # Platform-wide super admin
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<User {self.email}>"


class StaffPermission(Base):
    """Capability flags granted to a staff account within one tenant"""
    __tablename__ = "staff_permissions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='CASCADE'), nullable=False, index=True)
    can_manage_members = Column(Boolean, default=False, nullable=False)
    can_access_ledger = Column(Boolean, default=False, nullable=False)
    can_access_payments = Column(Boolean, default=False, nullable=False)
    can_access_analytics = Column(Boolean, default=False, nullable=False)
    can_change_settings = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    branches = relationship("Branch", secondary=staff_branch_access, lazy="selectin")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'user_id', name='uq_staff_permission'),
    )

    def granted(self) -> frozenset:
        """Capabilities switched on for this staff member"""
        return frozenset(cap for cap in StaffCapability if getattr(self, cap.value))

    def __repr__(self):
        return f"<StaffPermission User:{self.user_id} Tenant:{self.tenant_id}>"


class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(15), nullable=False)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    subscriptions = relationship("Subscription", back_populates="member")

    __table_args__ = (
        UniqueConstraint('branch_id', 'phone', name='uq_member_branch_phone'),
    )

    def __repr__(self):
        return f"<Member {self.name} ({self.phone})>"


class DailyPassUser(Base):
    __tablename__ = "daily_pass_users"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(15), nullable=False)
    gender = Column(String(20), nullable=True)
    address = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class PersonalTrainer(Base):
    __tablename__ = "personal_trainers"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(15), nullable=True)
    specialization = Column(String(100), nullable=True)
    monthly_fee = Column(Float, default=0, nullable=False)
    payment_category = Column(String(30), default="monthly_salary")  # monthly_salary, monthly_percentage, session_basis
    percentage_fee = Column(Float, default=0, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class MonthlyPackage(Base):
    __tablename__ = "monthly_packages"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    months = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    joining_fee = Column(Float, default=0, nullable=False)
    is_active = Column(Boolean, default=True)


class CustomPackage(Base):
    __tablename__ = "custom_packages"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    duration_days = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    is_active = Column(Boolean, default=True)


class GymSettings(Base):
    __tablename__ = "gym_settings"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), unique=True, nullable=False)
    gym_name = Column(String(100))
    gym_phone = Column(String(20))
    gym_address = Column(Text)
    whatsapp_enabled = Column(Boolean, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Subscription(Base):
    """Gym membership window for a member"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    plan_months = Column(Integer, nullable=True)
    duration_days = Column(Integer, nullable=True)
    status = Column(String(20), default="active", nullable=False)  # active, expired, cancelled
    created_at = Column(DateTime, default=datetime.utcnow)

    member = relationship("Member", back_populates="subscriptions")

    __table_args__ = (
        Index('idx_subscriptions_member_end', 'member_id', 'end_date'),
    )


class PTSubscription(Base):
    __tablename__ = "pt_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete='CASCADE'), nullable=False, index=True)
    trainer_id = Column(Integer, ForeignKey("personal_trainers.id", ondelete='CASCADE'), nullable=False)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    monthly_fee = Column(Float, default=0, nullable=False)
    total_fee = Column(Float, default=0, nullable=False)
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class DailyPassSubscription(Base):
    __tablename__ = "daily_pass_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    daily_pass_user_id = Column(Integer, ForeignKey("daily_pass_users.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    package_id = Column(Integer, ForeignKey("custom_packages.id", ondelete='SET NULL'), nullable=True)
    package_name = Column(String(100), nullable=False)
    duration_days = Column(Integer, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    price = Column(Float, default=0, nullable=False)
    trainer_id = Column(Integer, ForeignKey("personal_trainers.id", ondelete='SET NULL'), nullable=True)
    trainer_fee = Column(Float, default=0, nullable=False)
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class PaymentOrder(Base):
    """
    Validated purchase intent recorded when a gateway order is created.

    Verification reads the intent back by gateway order id instead of trusting
    the business fields echoed by the client. key_id pins the credential the
    order was created with.
    """
    __tablename__ = "payment_orders"

    id = Column(Integer, primary_key=True, index=True)
    razorpay_order_id = Column(String(100), unique=True, nullable=False, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    amount_paise = Column(Integer, nullable=False)
    currency = Column(String(3), default="INR", nullable=False)
    receipt = Column(String(40), nullable=False)
    key_id = Column(String(100), nullable=False)
    credential_source = Column(String(20), nullable=False)  # branch, tenant, platform
    intent = Column(JSON, nullable=False)
    status = Column(SQLEnum(PaymentOrderStatus), default=PaymentOrderStatus.CREATED, nullable=False)
    # Signature accepted when the order was paid; replays must present the same one
    razorpay_signature = Column(String(256), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<PaymentOrder {self.razorpay_order_id} ({self.status})>"


class Payment(Base):
    """One row per completed purchase, cash or online"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete='SET NULL'), nullable=True, index=True)
    daily_pass_user_id = Column(Integer, ForeignKey("daily_pass_users.id", ondelete='SET NULL'), nullable=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete='SET NULL'), nullable=True)
    daily_pass_subscription_id = Column(Integer, ForeignKey("daily_pass_subscriptions.id", ondelete='SET NULL'), nullable=True)
    pt_subscription_id = Column(Integer, ForeignKey("pt_subscriptions.id", ondelete='SET NULL'), nullable=True)
    amount = Column(Float, nullable=False)
    payment_mode = Column(SQLEnum(PaymentMode), nullable=False)
    status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    payment_type = Column(String(30), nullable=False)  # membership, gym_and_pt, pt, daily_pass
    razorpay_order_id = Column(String(100), nullable=True, index=True)
    razorpay_payment_id = Column(String(100), unique=True, nullable=True, index=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_payments_branch_created', 'branch_id', 'created_at'),
    )

    def __repr__(self):
        return f"<Payment {self.id} {self.payment_mode} {self.amount} ({self.status})>"


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    entry_type = Column(SQLEnum(LedgerEntryType), nullable=False)
    category = Column(String(50), nullable=False)
    description = Column(Text, nullable=False)
    amount = Column(Float, nullable=False)
    entry_date = Column(Date, nullable=False)
    member_id = Column(Integer, ForeignKey("members.id", ondelete='SET NULL'), nullable=True)
    daily_pass_user_id = Column(Integer, ForeignKey("daily_pass_users.id", ondelete='SET NULL'), nullable=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete='SET NULL'), nullable=True)
    trainer_id = Column(Integer, ForeignKey("personal_trainers.id", ondelete='SET NULL'), nullable=True)
    pt_subscription_id = Column(Integer, ForeignKey("pt_subscriptions.id", ondelete='SET NULL'), nullable=True)
    is_auto_generated = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_ledger_branch_date', 'branch_id', 'entry_date'),
    )

    def __repr__(self):
        return f"<LedgerEntry {self.entry_type} {self.category} {self.amount}>"


class AttendanceLog(Base):
    """One visit per row; a second scan the same day closes it"""
    __tablename__ = "attendance_logs"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete='CASCADE'), nullable=False, index=True)
    attendance_date = Column(Date, nullable=False)
    check_in_at = Column(DateTime, nullable=False)
    check_out_at = Column(DateTime, nullable=True)
    status = Column(String(20), default="checked_in", nullable=False)  # checked_in, checked_out, expired
    recorded_by = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'), nullable=True)

    __table_args__ = (
        Index('idx_attendance_member_date', 'member_id', 'attendance_date'),
    )

    def __repr__(self):
        return f"<AttendanceLog member={self.member_id} {self.attendance_date} ({self.status})>"
