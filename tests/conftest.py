"""
Shared pytest fixtures.

Every test gets a fresh in-memory SQLite database, a gateway client wired to
an httpx.MockTransport, and helpers to seed gyms, users and credentials.
"""

import json
import os
from datetime import date
from types import SimpleNamespace
from typing import AsyncGenerator, Optional

# Settings are read at import time, so the environment comes first
os.environ["DATABASE_URL"] = "sqlite:///./test.sqlite"
os.environ["SECRET_KEY"] = "test-secret-key-for-jwt-signing"
os.environ["RAZORPAY_ENCRYPTION_KEY"] = "00112233445566778899aabbccddeeff" * 2
os.environ["RAZORPAY_KEY_ID"] = ""
os.environ["RAZORPAY_KEY_SECRET"] = ""
os.environ["DEBUG"] = "false"

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import insert, select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers every table
from auth import create_access_token
from database import Base, get_db
from encryption import encrypt_secret
from models import (
    Tenant, TenantLimits, Branch, User, StaffPermission, GatewayCredential,
    PersonalTrainer, Member, Subscription, tenant_members, UserRole,
)
from razorpay_service import RazorpayService

GATEWAY_BASE_URL = "https://api.razorpay.test/v1"


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test, one shared connection"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


async def count_rows(db: AsyncSession, model) -> int:
    return await db.scalar(select(func.count()).select_from(model))


@pytest.fixture
def count(db):
    """await count(Payment) -> number of rows"""
    async def _count(model) -> int:
        return await count_rows(db, model)
    return _count


# ============================================================================
# GATEWAY FIXTURES
# ============================================================================


class GatewayStub:
    """Answers Razorpay order calls; records every request"""

    def __init__(self):
        self.requests = []
        self.status_code = 200
        self.error: Optional[Exception] = None
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.status_code >= 400:
            return httpx.Response(
                self.status_code,
                json={"error": {"code": "BAD_REQUEST_ERROR", "description": "rejected"}},
            )
        body = json.loads(request.content)
        self._counter += 1
        return httpx.Response(200, json={
            "id": f"order_Test{self._counter:06d}",
            "entity": "order",
            "amount": body["amount"],
            "currency": body["currency"],
            "receipt": body["receipt"],
            "status": "created",
        })


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub) -> RazorpayService:
    return RazorpayService(
        base_url=GATEWAY_BASE_URL,
        transport=httpx.MockTransport(gateway_stub.handler),
    )


# ============================================================================
# SEED FIXTURES
# ============================================================================


async def seed_gym(
    db: AsyncSession,
    slug: str = "iron-temple",
    features: Optional[dict] = None,
    plan_expiry_date: Optional[date] = None,
) -> SimpleNamespace:
    tenant = Tenant(name=f"Gym {slug}", slug=slug, timezone="Asia/Kolkata", is_active=True)
    db.add(tenant)
    await db.flush()
    limits = TenantLimits(tenant_id=tenant.id, features=features, plan_expiry_date=plan_expiry_date)
    branch = Branch(tenant_id=tenant.id, name="Main Branch", is_default=True)
    db.add_all([limits, branch])
    await db.commit()
    return SimpleNamespace(tenant=tenant, branch=branch, limits=limits)


@pytest_asyncio.fixture
async def gym(db) -> SimpleNamespace:
    return await seed_gym(db)


@pytest.fixture
def make_gym(db):
    async def _make(**kwargs) -> SimpleNamespace:
        return await seed_gym(db, **kwargs)
    return _make


@pytest.fixture
def add_credential(db):
    """Store an encrypted key pair for a tenant or a branch override"""
    async def _add(
        tenant_id: int,
        key_id: str,
        key_secret: str,
        branch_id: Optional[int] = None,
        verified: bool = True,
    ) -> GatewayCredential:
        encrypted, iv = encrypt_secret(key_secret)
        row = GatewayCredential(
            tenant_id=tenant_id,
            branch_id=branch_id,
            key_id=key_id,
            encrypted_key_secret=encrypted,
            encryption_iv=iv,
            is_verified=verified,
        )
        db.add(row)
        await db.commit()
        return row
    return _add


@pytest.fixture
def make_user(db):
    """
    Create a user inside a tenant and return (user, bearer token).

    capabilities: StaffPermission flag names switched on for staff.
    """
    async def _make(
        tenant_id: Optional[int],
        role: Optional[UserRole] = UserRole.ADMIN,
        capabilities=(),
        branch_ids=(),
        is_super_admin: bool = False,
        email: Optional[str] = None,
    ):
        user = User(
            email=email or f"user{await count_rows(db, User) + 1}@example.com",
            full_name="Test User",
            is_active=True,
            is_super_admin=is_super_admin,
        )
        db.add(user)
        await db.flush()

        if tenant_id is not None and role is not None:
            await db.execute(insert(tenant_members).values(
                tenant_id=tenant_id, user_id=user.id, role=role, is_active=True,
            ))
            if role == UserRole.STAFF:
                permission = StaffPermission(
                    tenant_id=tenant_id,
                    user_id=user.id,
                    **{name: True for name in capabilities},
                )
                if branch_ids:
                    result = await db.execute(select(Branch).where(Branch.id.in_(branch_ids)))
                    permission.branches = list(result.scalars().all())
                else:
                    permission.branches = []
                db.add(permission)

        await db.commit()
        token = create_access_token({"sub": str(user.id)}, tenant_id=tenant_id)
        return user, token
    return _make


@pytest.fixture
def add_trainer(db):
    async def _add(branch_id: int, name: str = "Arjun Rao", monthly_fee: float = 1500,
                   payment_category: str = "monthly_salary", percentage_fee: float = 0) -> PersonalTrainer:
        trainer = PersonalTrainer(
            branch_id=branch_id,
            name=name,
            phone="9000000001",
            specialization="Strength",
            monthly_fee=monthly_fee,
            payment_category=payment_category,
            percentage_fee=percentage_fee,
        )
        db.add(trainer)
        await db.commit()
        return trainer
    return _add


@pytest.fixture
def add_member(db):
    async def _add(branch_id: int, name: str = "Priya Sharma", phone: str = "9876543210",
                   subscription_end: Optional[date] = None, subscription_start: Optional[date] = None) -> Member:
        member = Member(branch_id=branch_id, name=name, phone=phone)
        db.add(member)
        await db.flush()
        if subscription_end is not None:
            db.add(Subscription(
                member_id=member.id,
                branch_id=branch_id,
                start_date=subscription_start or date(subscription_end.year, 1, 1),
                end_date=subscription_end,
                plan_months=1,
                status="active",
            ))
        await db.commit()
        return member
    return _add


# ============================================================================
# APP FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def client(session_factory, gateway) -> AsyncGenerator[httpx.AsyncClient, None]:
    """API client against the app, with the test database and gateway mounted"""
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.gateway = gateway

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.gateway = None


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def bearer():
    return auth_headers


@pytest.fixture
def intent_payload(gym):
    """A valid new-member purchase for the seeded branch, camelCase like the SPA sends it"""
    def _payload(**overrides) -> dict:
        payload = {
            "amount": 1700,
            "memberName": "Priya Sharma",
            "memberPhone": "9876543210",
            "isNewMember": True,
            "months": 3,
            "branchId": gym.branch.id,
            "gymFee": 1700,
            "joiningFee": 200,
        }
        payload.update(overrides)
        return {k: v for k, v in payload.items() if v is not None}
    return _payload
