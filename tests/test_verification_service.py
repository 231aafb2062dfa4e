"""Checkout callback verification and exactly-once granting"""

from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy import select

import verification_service
from models import (
    PaymentOrder, PaymentOrderStatus, Payment, PaymentMode, Member, Subscription, LedgerEntry,
)
from order_service import create_payment_order
from payment_errors import SignatureVerificationError, BusinessRuleError
from purchase_validation import parse_purchase_intent
from razorpay_service import sign_payment
from verification_service import VerificationRequest, verify_and_grant

pytestmark = pytest.mark.asyncio

TENANT_KEY = "rzp_test_tenant000001"
TENANT_SECRET = "tenant_secret"
TODAY = date(2025, 3, 10)


@pytest_asyncio.fixture
async def tenant_keys(gym, add_credential):
    return await add_credential(gym.tenant.id, TENANT_KEY, TENANT_SECRET)


@pytest_asyncio.fixture
async def order(db, gym, gateway, tenant_keys, intent_payload):
    intent = parse_purchase_intent(intent_payload())
    return await create_payment_order(db, intent, gateway=gateway)


def _callback(order, intent: dict, payment_id: str = "pay_Test000001", secret: str = TENANT_SECRET, signature=None):
    return VerificationRequest.model_validate({
        **intent,
        "razorpay_order_id": order["orderId"],
        "razorpay_payment_id": payment_id,
        "razorpay_signature": signature or sign_payment(order["orderId"], payment_id, secret),
    })


class TestVerifyAndGrant:
    async def test_genuine_payment_is_granted(self, db, gym, gateway, order, intent_payload, count):
        result = await verify_and_grant(db, _callback(order, intent_payload()), gateway=gateway, today=TODAY)

        assert result["success"] is True
        assert result["endDate"] == "2025-06-10"
        member = await db.get(Member, result["memberId"])
        assert member.phone == "9876543210"

        payment = (await db.execute(select(Payment))).scalar_one()
        assert payment.payment_mode == PaymentMode.ONLINE
        assert payment.razorpay_order_id == order["orderId"]
        assert payment.razorpay_payment_id == "pay_Test000001"
        assert payment.amount == 1700

        pending = (await db.execute(select(PaymentOrder))).scalar_one()
        assert pending.status == PaymentOrderStatus.PAID

    async def test_tampered_signature_writes_nothing(self, db, gym, gateway, order, intent_payload, count):
        callback = _callback(order, intent_payload(), signature="f" * 64)

        with pytest.raises(SignatureVerificationError) as exc:
            await verify_and_grant(db, callback, gateway=gateway, today=TODAY)

        assert exc.value.message == "Payment verification failed"
        for model in (Payment, Member, Subscription, LedgerEntry):
            assert await count(model) == 0
        pending = (await db.execute(
            select(PaymentOrder).execution_options(populate_existing=True)
        )).scalar_one()
        assert pending.status == PaymentOrderStatus.CREATED
        assert pending.razorpay_signature is None
        assert not db.dirty

    async def test_signature_from_other_secret_rejected(self, db, gym, gateway, order, intent_payload, count):
        callback = _callback(order, intent_payload(), secret="someone_elses_secret")

        with pytest.raises(SignatureVerificationError):
            await verify_and_grant(db, callback, gateway=gateway, today=TODAY)
        assert await count(Payment) == 0

    async def test_genuine_signature_after_failed_attempt(self, db, gym, gateway, order, intent_payload):
        with pytest.raises(SignatureVerificationError):
            await verify_and_grant(db, _callback(order, intent_payload(), signature="f" * 64), gateway=gateway, today=TODAY)

        result = await verify_and_grant(db, _callback(order, intent_payload()), gateway=gateway, today=TODAY)
        assert result["success"] is True

    async def test_replay_grants_once(self, db, gym, gateway, order, intent_payload, count):
        first = await verify_and_grant(db, _callback(order, intent_payload()), gateway=gateway, today=TODAY)
        second = await verify_and_grant(db, _callback(order, intent_payload()), gateway=gateway, today=TODAY)

        assert first == second
        assert await count(Payment) == 1
        assert await count(Subscription) == 1
        assert await count(Member) == 1

    async def test_replay_after_key_rotation_returns_stored_result(
        self, db, gym, gateway, order, intent_payload, add_credential, count
    ):
        callback = _callback(order, intent_payload())
        first = await verify_and_grant(db, callback, gateway=gateway, today=TODAY)
        await add_credential(gym.tenant.id, "rzp_test_branch000002", "new_secret", branch_id=gym.branch.id)

        replay = await verify_and_grant(db, callback, gateway=gateway, today=TODAY)

        assert replay == first
        assert await count(Payment) == 1

    async def test_replay_with_forged_signature_rejected(self, db, gym, gateway, order, intent_payload):
        await verify_and_grant(db, _callback(order, intent_payload()), gateway=gateway, today=TODAY)

        with pytest.raises(SignatureVerificationError):
            await verify_and_grant(
                db, _callback(order, intent_payload(), signature="a" * 64), gateway=gateway, today=TODAY
            )

    async def test_unknown_order(
self, db, gym, gateway, tenant_keys, intent_payload):
        fake_order = {"orderId": "order_NotOurs00001"}
        with pytest.raises(SignatureVerificationError):
            await verify_and_grant(db, _callback(fake_order, intent_payload()), gateway=gateway, today=TODAY)

    async def test_key_rotation_mid_checkout(self, db, gym, gateway, order, tenant_keys, intent_payload, add_credential, count):
        await add_credential(gym.tenant.id, "rzp_test_branch000002", "new_secret", branch_id=gym.branch.id)

        with pytest.raises(SignatureVerificationError) as exc:
            await verify_and_grant(db, _callback(order, intent_payload()), gateway=gateway, today=TODAY)

        assert "changed during checkout" in exc.value.message
        assert await count(Payment) == 0

    async def test_changed_purchase_details_rejected(self, db, gym, gateway, order, intent_payload, count):
        callback = _callback(order, intent_payload(months=12, amount=6000, gymFee=6000))

        with pytest.raises(BusinessRuleError) as exc:
            await verify_and_grant(db, callback, gateway=gateway, today=TODAY)

        assert exc.value.message == "Purchase details do not match the order"
        assert await count(Payment) == 0

    async def test_payment_id_reused_for_other_order(self, db, gym, gateway, order, intent_payload):
        await verify_and_grant(db, _callback(order, intent_payload()), gateway=gateway, today=TODAY)

        other_intent = intent_payload(memberPhone="9988776655")
        other_order = await create_payment_order(db, parse_purchase_intent(other_intent), gateway=gateway)

        with pytest.raises(BusinessRuleError) as exc:
            await verify_and_grant(db, _callback(other_order, other_intent), gateway=gateway, today=TODAY)
        assert exc.value.message == "Payment does not belong to this order"

    async def test_concurrent_duplicate_resolves_to_stored_payment(
        self, db, gym, gateway, tenant_keys, add_member, monkeypatch, count
    ):
        member = await add_member(gym.branch.id)
        intent = {
            "amount": 800, "memberId": member.id, "memberName": member.name, "memberPhone": member.phone,
            "isNewMember": False, "months": 1, "branchId": gym.branch.id,
        }
        order = await create_payment_order(db, parse_purchase_intent(intent), gateway=gateway)
        first = await verify_and_grant(db, _callback(order, intent), gateway=gateway, today=TODAY)

        # Second request raced past the lookups before the first one committed
        pending = (await db.execute(select(PaymentOrder))).scalar_one()
        pending.status = PaymentOrderStatus.CREATED
        await db.commit()

        real_lookup = verification_service._payment_by_gateway_id
        calls = []

        async def racing_lookup(session, payment_id):
            calls.append(payment_id)
            if len(calls) == 1:
                return None
            return await real_lookup(session, payment_id)

        monkeypatch.setattr(verification_service, "_payment_by_gateway_id", racing_lookup)

        second = await verify_and_grant(db, _callback(order, intent), gateway=gateway, today=TODAY)

        assert second == first
        assert len(calls) == 2
        assert await count(Payment) == 1
        assert await count(Subscription) == 1


class TestVerifyPaymentEndpoint:
    async def test_full_checkout_flow(self, client, gym, tenant_keys, intent_payload, count):
        created = await client.post("/functions/create-order", json=intent_payload())
        assert created.status_code == 200
        order = created.json()

        payload = {
            **intent_payload(),
            "razorpay_order_id": order["orderId"],
            "razorpay_payment_id": "pay_Flow00000001",
            "razorpay_signature": sign_payment(order["orderId"], "pay_Flow00000001", TENANT_SECRET),
        }
        response = await client.post("/functions/verify-payment", json=payload)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["memberId"] is not None
        assert "dailyPassUserId" not in data

        replay = await client.post("/functions/verify-payment", json=payload)
        assert replay.status_code == 200
        assert replay.json() == data
        assert await count(Payment) == 1

    async def test_bad_signature(self, client, gym, order, intent_payload):
        payload = {
            **intent_payload(),
            "razorpay_order_id": order["orderId"],
            "razorpay_payment_id": "pay_Flow00000001",
            "razorpay_signature": "deadbeef",
        }
        response = await client.post("/functions/verify-payment", json=payload)

        assert response.status_code == 400
        assert response.json() == {"error": "Payment verification failed"}

    async def test_missing_signature_field(self, client, gym, order, intent_payload):
        payload = {
            **intent_payload(),
            "razorpay_order_id": order["orderId"],
            "razorpay_payment_id": "pay_Flow00000001",
        }
        response = await client.post("/functions/verify-payment", json=payload)

        assert response.status_code == 400
        assert response.json()["error"].startswith("Validation failed: razorpay_signature:")
