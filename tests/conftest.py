"""Shared test fixtures.

Each test gets its own SQLite database file under tmp_path; upstream
providers are replaced by httpx.MockTransport stubs.
"""
from typing import Optional

import pytest

from marketplace.auth.api_key import ApiKeyAuthenticator, ApiKeyContext, ApiKeyService
from marketplace.auth.quota import QuotaTracker
from marketplace.auth.users import UserDirectory
from marketplace.cost.database import Database
from marketplace.cost.ledger import CreditLedger
from marketplace.cost.recorder import UsageRecorder
from marketplace.proxy.service import ProxyService
from marketplace.registry.shadow_models import ModelRegistry
from marketplace.utils.encryption import EncryptionService
from stubs import UpstreamStub

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4


@pytest.fixture
def database(tmp_path):
    db = Database(
        f"sqlite:///{tmp_path / 'marketplace.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    db.init_db()
    yield db
    db.close()


@pytest.fixture
def encryption():
    return EncryptionService(TEST_ENCRYPTION_KEY)


@pytest.fixture
def registry(database, encryption):
    return ModelRegistry(database, encryption)


@pytest.fixture
def ledger(database):
    return CreditLedger(database)


@pytest.fixture
def quota(database):
    return QuotaTracker(database)


@pytest.fixture
def recorder(database):
    return UsageRecorder(database)


@pytest.fixture
def users(database):
    return UserDirectory(database)


@pytest.fixture
def api_keys(database):
    return ApiKeyService(database)


@pytest.fixture
def authenticator(database):
    return ApiKeyAuthenticator(database)


@pytest.fixture
def user(users, ledger):
    """Active user with a 10 credit balance."""
    user = users.create("dev@example.com")
    ledger.open_account(user.id, initial_grant=10)
    return user


@pytest.fixture
def anthropic_model(registry):
    return registry.create(
        display_name="claude-fast",
        provider_base_url="https://api.anthropic.com",
        provider_token="sk-ant-test-token-1234",
        provider_model="claude-3-haiku-20240307",
        pricing_input="0.25",
        pricing_output="1.25",
    )


@pytest.fixture
def openai_model(registry):
    return registry.create(
        display_name="gpt-mini",
        provider_base_url="https://api.openai.com/",
        provider_token="sk-openai-test-token-5678",
        provider_model="gpt-4o-mini",
        pricing_input="0.15",
        pricing_output="0.6",
    )


@pytest.fixture
def issued_key(api_keys, user):
    """(ApiKey row, raw key) for the default user."""
    return api_keys.create(user.id, "test-key")


@pytest.fixture
def key_context(issued_key):
    api_key, _ = issued_key
    return ApiKeyContext(user_id=api_key.user_id, api_key_id=api_key.id)


@pytest.fixture
def make_proxy(registry, ledger, quota, recorder):
    """Build a ProxyService talking to the given upstream stub."""

    def factory(upstream: Optional[UpstreamStub] = None, **kwargs) -> ProxyService:
        transport = upstream.transport if upstream is not None else None
        return ProxyService(registry, ledger, quota, recorder, transport=transport, **kwargs)

    return factory
