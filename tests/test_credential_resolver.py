"""Gateway credential precedence and secret storage"""

from datetime import datetime

import pytest

from config import settings
from credential_resolver import CredentialSource, resolve_gateway_credentials
import encryption
from encryption import encrypt_secret, decrypt_secret, mask_key_id, CredentialEncryptionError


@pytest.fixture
def platform_keys(monkeypatch):
    monkeypatch.setattr(settings, "RAZORPAY_KEY_ID", "rzp_test_platform0001")
    monkeypatch.setattr(settings, "RAZORPAY_KEY_SECRET", "platform_secret")


class TestEncryption:
    def test_secret_survives_storage(self):
        ciphertext, iv = encrypt_secret("s3cr3t_value")
        assert "s3cr3t_value" not in ciphertext
        assert len(iv) == 24
        assert decrypt_secret(ciphertext, iv) == "s3cr3t_value"

    def test_each_encryption_uses_fresh_iv(self):
        first = encrypt_secret("same")
        second = encrypt_secret("same")
        assert first[1] != second[1]
        assert first[0] != second[0]

    def test_wrong_key_fails(self):
        ciphertext, iv = encrypt_secret("s3cr3t_value")
        with pytest.raises(CredentialEncryptionError):
            decrypt_secret(ciphertext, iv, hex_key="ab" * 32)

    def test_tampered_ciphertext_fails(self):
        ciphertext, iv = encrypt_secret("s3cr3t_value")
        tampered = ("0" if ciphertext[0] != "0" else "1") + ciphertext[1:]
        with pytest.raises(CredentialEncryptionError):
            decrypt_secret(tampered, iv)

    @pytest.mark.parametrize("key", ["", "not-hex", "ab" * 16])
    def test_bad_master_key(self, key):
        with pytest.raises(CredentialEncryptionError):
            encrypt_secret("value", hex_key=key)

    def test_configured_master_key_loads(self):
        assert len(encryption._load_key()) == 32

    def test_mask_key_id(self):
        assert mask_key_id("rzp_live_AbCdEf123456") == "rzp_live_****3456"
        assert mask_key_id("rzp_test_abc") == "rzp_test_****"
        assert mask_key_id("") == ""


@pytest.mark.asyncio
class TestResolveGatewayCredentials:
    async def test_branch_override_wins(self, db, gym, add_credential):
        await add_credential(gym.tenant.id, "rzp_test_tenant000001", "tenant_secret")
        await add_credential(gym.tenant.id, "rzp_test_branch000001", "branch_secret", branch_id=gym.branch.id)

        resolved = await resolve_gateway_credentials(db, branch_id=gym.branch.id)

        assert resolved.source == CredentialSource.BRANCH
        assert resolved.key_id == "rzp_test_branch000001"
        assert resolved.key_secret == "branch_secret"
        assert resolved.branch_id == gym.branch.id

    async def test_tenant_credential_when_branch_has_none(self, db, gym, add_credential):
        await add_credential(gym.tenant.id, "rzp_test_tenant000001", "tenant_secret")

        resolved = await resolve_gateway_credentials(db, branch_id=gym.branch.id)

        assert resolved.source == CredentialSource.TENANT
        assert resolved.key_secret == "tenant_secret"

    async def test_tenant_lookup_by_tenant_id(self, db, gym, add_credential):
        await add_credential(gym.tenant.id, "rzp_test_tenant000001", "tenant_secret")
        resolved = await resolve_gateway_credentials(db, tenant_id=gym.tenant.id)
        assert resolved.source == CredentialSource.TENANT

    async def test_unverified_override_is_ignored(self, db, gym, add_credential):
        await add_credential(gym.tenant.id, "rzp_test_tenant000001", "tenant_secret")
        await add_credential(
            gym.tenant.id, "rzp_test_branch000001", "branch_secret",
            branch_id=gym.branch.id, verified=False,
        )

        resolved = await resolve_gateway_credentials(db, branch_id=gym.branch.id)
        assert resolved.source == CredentialSource.TENANT

    async def test_platform_default(self, db, gym, platform_keys):
        resolved = await resolve_gateway_credentials(db, branch_id=gym.branch.id)
        assert resolved.source == CredentialSource.PLATFORM
        assert resolved.key_id == "rzp_test_platform0001"

    async def test_not_configured(self, db, gym):
        resolved = await resolve_gateway_credentials(db, branch_id=gym.branch.id)
        assert resolved.source == CredentialSource.NOT_CONFIGURED
        assert not resolved.is_configured

    async def test_undecryptable_level_is_skipped(self, db, gym, add_credential):
        await add_credential(gym.tenant.id, "rzp_test_tenant000001", "tenant_secret")
        branch_row = await add_credential(
            gym.tenant.id, "rzp_test_branch000001", "branch_secret", branch_id=gym.branch.id,
        )
        branch_row.encrypted_key_secret = "00" * 32
        await db.commit()

        resolved = await resolve_gateway_credentials(db, branch_id=gym.branch.id)
        assert resolved.source == CredentialSource.TENANT

    async def test_deleted_tenant_contributes_nothing(self, db, gym, add_credential):
        await add_credential(gym.tenant.id, "rzp_test_tenant000001", "tenant_secret")
        gym.tenant.deleted_at = datetime.utcnow()
        await db.commit()

        resolved = await resolve_gateway_credentials(db, branch_id=gym.branch.id)
        assert resolved.source == CredentialSource.NOT_CONFIGURED

    async def test_deleted_branch_contributes_nothing(self, db, gym, add_credential):
        await add_credential(gym.tenant.id, "rzp_test_branch000001", "branch_secret", branch_id=gym.branch.id)
        gym.branch.deleted_at = datetime.utcnow()
        await db.commit()

        resolved = await resolve_gateway_credentials(db, branch_id=gym.branch.id)
        assert resolved.source == CredentialSource.NOT_CONFIGURED

    async def test_deleted_branch_never_gets_platform_keys(self, db, gym, platform_keys):
        gym.branch.deleted_at = datetime.utcnow()
        await db.commit()

        resolved = await resolve_gateway_credentials(db, branch_id=gym.branch.id)
        assert resolved.source == CredentialSource.NOT_CONFIGURED

    async def test_unknown_gym_never_gets_platform_keys(self, db, platform_keys):
        assert (await resolve_gateway_credentials(db, branch_id=999)).source == CredentialSource.NOT_CONFIGURED
        assert (await resolve_gateway_credentials(db, tenant_id=999)).source == CredentialSource.NOT_CONFIGURED

    async def test_never_another_tenants_keys(self, db, gym, make_gym, add_credential):
        other = await make_gym(slug="other-gym")
        await add_credential(gym.tenant.id, "rzp_test_tenant000001", "tenant_secret")

        resolved = await resolve_gateway_credentials(db, branch_id=other.branch.id)
        assert resolved.source == CredentialSource.NOT_CONFIGURED

    async def test_secret_not_in_repr(self, db, gym, add_credential):
        await add_credential(gym.tenant.id, "rzp_test_tenant000001", "tenant_secret")
        resolved = await resolve_gateway_credentials(db, branch_id=gym.branch.id)
        assert "tenant_secret" not in repr(resolved)
        assert resolved.masked_key_id == "rzp_test_****0001"
