"""Public registration data and gated gym records"""

from datetime import datetime

import pytest

from entitlements import grant_entitlement
from models import MonthlyPackage, CustomPackage, PaymentMode, UserRole
from purchase_validation import parse_purchase_intent

pytestmark = pytest.mark.asyncio


class TestPublicData:
    async def test_trainers_expose_display_fields_only(self, client, gym, add_trainer):
        await add_trainer(gym.branch.id, payment_category="monthly_percentage", percentage_fee=30)

        response = await client.get("/functions/public-data", params={"action": "trainers", "branchId": gym.branch.id})

        assert response.status_code == 200
        trainers = response.json()["trainers"]
        assert len(trainers) == 1
        assert set(trainers[0]) == {"id", "name", "monthly_fee"}

    async def test_packages(self, client, db, gym):
        db.add_all([
            MonthlyPackage(branch_id=gym.branch.id, months=3, price=1500, joining_fee=200),
            MonthlyPackage(branch_id=gym.branch.id, months=1, price=600, joining_fee=200),
            MonthlyPackage(branch_id=gym.branch.id, months=6, price=2800, joining_fee=0, is_active=False),
            CustomPackage(branch_id=gym.branch.id, name="Week Pass", duration_days=7, price=300),
        ])
        await db.commit()

        response = await client.get("/functions/public-data", params={"action": "packages", "branchId": gym.branch.id})

        data = response.json()
        assert [p["months"] for p in data["monthly"]] == [1, 3]
        assert data["custom"][0]["name"] == "Week Pass"

    async def test_branch(self, client, gym):
        response = await client.get("/functions/public-data", params={"action": "branch", "branchId": gym.branch.id})
        assert response.json() == {"branch": {"id": gym.branch.id, "name": "Main Branch"}}

    async def test_deleted_tenant_is_hidden(self, client, db, gym):
        gym.tenant.deleted_at = datetime.utcnow()
        await db.commit()

        response = await client.get("/functions/public-data", params={"action": "branch", "branchId": gym.branch.id})
        assert response.status_code == 404

    async def test_unknown_action(self, client, gym):
        response = await client.get("/functions/public-data", params={"action": "credentials", "branchId": gym.branch.id})
        assert response.status_code == 400


class TestProtectedData:
    async def _record_payment(self, db, gym, intent_payload):
        purchase = parse_purchase_intent(intent_payload())
        await grant_entitlement(db, purchase, gym.branch.id, PaymentMode.CASH, datetime.utcnow().date())

    async def test_requires_session(self, client, gym):
        response = await client.get("/functions/protected-data", params={"action": "trainers", "branchId": gym.branch.id})
        assert response.status_code == 401

    async def test_admin_reads_full_trainer_records(self, client, gym, add_trainer, make_user, bearer):
        await add_trainer(gym.branch.id, payment_category="monthly_percentage", percentage_fee=30)
        _, token = await make_user(gym.tenant.id)

        response = await client.get(
            "/functions/protected-data",
            params={"action": "trainers", "branchId": gym.branch.id},
            headers=bearer(token),
        )

        trainer = response.json()["trainers"][0]
        assert trainer["phone"] == "9000000001"
        assert trainer["percentage_fee"] == 30

    async def test_ledger_needs_ledger_capability(self, client, db, gym, make_user, bearer, intent_payload):
        await self._record_payment(db, gym, intent_payload)
        _, payments_only = await make_user(gym.tenant.id, role=UserRole.STAFF, capabilities=["can_access_payments"])
        _, ledger_staff = await make_user(gym.tenant.id, role=UserRole.STAFF, capabilities=["can_access_ledger"])
        params = {"action": "ledger", "branchId": gym.branch.id}

        denied = await client.get("/functions/protected-data", params=params, headers=bearer(payments_only))
        allowed = await client.get("/functions/protected-data", params=params, headers=bearer(ledger_staff))

        assert denied.status_code == 403
        assert "Access Ledger" in denied.json()["detail"]
        assert allowed.status_code == 200
        assert {e["category"] for e in allowed.json()["ledger"]} == {"gym_membership", "joining_fee"}

    async def test_payments(self, client, db, gym, make_user, bearer, intent_payload):
        await self._record_payment(db, gym, intent_payload)
        _, token = await make_user(gym.tenant.id, role=UserRole.STAFF, capabilities=["can_access_payments"])

        response = await client.get(
            "/functions/protected-data",
            params={"action": "payments", "branchId": gym.branch.id},
            headers=bearer(token),
        )

        payments = response.json()["payments"]
        assert len(payments) == 1
        assert payments[0]["payment_mode"] == "cash"
        assert payments[0]["amount"] == 1700

    async def test_settings_default(self, client, gym, make_user, bearer):
        _, token = await make_user(gym.tenant.id)

        response = await client.get(
            "/functions/protected-data",
            params={"action": "settings", "branchId": gym.branch.id},
            headers=bearer(token),
        )
        assert response.json()["settings"]["gym_name"] == "Main Branch"

    async def test_other_tenants_branch(self, client, gym, make_gym, make_user, bearer):
        other = await make_gym(slug="other-gym")
        _, token = await make_user(other.tenant.id)

        response = await client.get(
            "/functions/protected-data",
            params={"action": "trainers", "branchId": gym.branch.id},
            headers=bearer(token),
        )
        assert response.status_code == 404
