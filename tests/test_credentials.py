"""Tests for provider API key resolution."""

import pytest

from ad_batch.config import Settings
from ad_batch.core.exceptions import QuotaExceededError
from ad_batch.db.models import ProviderCredential
from ad_batch.services.credential_service import CredentialService, decode_api_key, encode_api_key


def _credential(owner_id, api_key, source="user", is_active=True, service="kie-ai"):
    return ProviderCredential(
        owner_id=owner_id,
        service=service,
        source=source,
        api_key_encrypted=encode_api_key(api_key),
        is_active=is_active,
    )


@pytest.fixture
def no_platform_key(store) -> CredentialService:
    return CredentialService(store, Settings(kie_api_key=None))


class TestResolveApiKey:
    """Resolution order: admin, then user, then platform."""

    def test_admin_key_wins(self, store, credentials, owner_id):
        store.add_rows(
            _credential(owner_id, "user-key", source="user"),
            _credential(owner_id, "admin-key", source="admin"),
        )
        assert credentials.resolve_api_key(owner_id) == "admin-key"

    def test_user_key_before_platform(self, store, credentials, owner_id):
        store.add_rows(_credential(owner_id, "user-key"))
        assert credentials.resolve_api_key(owner_id) == "user-key"

    def test_platform_key_fallback(self, credentials, owner_id):
        assert credentials.resolve_api_key(owner_id) == "platform-key"

    def test_inactive_and_foreign_keys_ignored(self, store, credentials, owner_id):
        store.add_rows(
            _credential(owner_id, "inactive-key", is_active=False),
            _credential("owner-2", "other-owner-key"),
            _credential(owner_id, "other-service-key", service="openai"),
        )
        assert credentials.resolve_api_key(owner_id) == "platform-key"

    def test_undecodable_key_skipped(self, store, credentials, owner_id):
        store.add_rows(
            ProviderCredential(
                owner_id=owner_id,
                service="kie-ai",
                source="admin",
                api_key_encrypted="%%% not base64 %%%",
            )
        )
        assert credentials.resolve_api_key(owner_id) == "platform-key"

    def test_no_key_raises_quota_exceeded(self, no_platform_key, owner_id):
        with pytest.raises(QuotaExceededError) as exc_info:
            no_platform_key.resolve_api_key(owner_id)
        assert exc_info.value.status_code == 402
        assert exc_info.value.context == {"owner_id": owner_id, "service": "kie-ai"}
        assert no_platform_key.has_usable_key(owner_id) is False

    def test_last_used_recorded(self, store, no_platform_key, owner_id):
        store.add_rows(_credential(owner_id, "user-key"))

        no_platform_key.resolve_api_key(owner_id)

        with store.session() as db:
            credential = db.query(ProviderCredential).filter_by(owner_id=owner_id).one()
            assert credential.last_used_at is not None


class TestKeyEncoding:
    def test_encode_decode(self):
        assert decode_api_key(encode_api_key("sk-kie-123")) == "sk-kie-123"
