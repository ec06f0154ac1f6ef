import os

# Before any costsentry imports so get_settings() never picks up a developer .env
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.pop("REDIS_URL", None)

from datetime import date

import pytest

from costsentry.core.config import Settings
from costsentry.schemas.costs import Account
from costsentry.services.persistence.memory import InMemoryCostRepository
from tests.factories import AS_OF


@pytest.fixture
def settings() -> Settings:
    """Defaults with instant retries and no rate limiting."""
    return Settings(
        TESTING=True,
        DATABASE_URL="sqlite+aiosqlite://",
        REDIS_URL=None,
        FETCH_MAX_ATTEMPTS=3,
        FETCH_BACKOFF_MIN_SECONDS=0.0,
        FETCH_BACKOFF_MAX_SECONDS=0.0,
        PROVIDER_RATE_LIMIT_PER_SECOND=1000.0,
        SYNC_FETCH_TIMEOUT_SECONDS=5.0,
        SLACK_BOT_TOKEN=None,
        SLACK_CHANNEL_ID=None,
    )


@pytest.fixture
def as_of() -> date:
    return AS_OF


@pytest.fixture
def repo() -> InMemoryCostRepository:
    return InMemoryCostRepository()


@pytest.fixture
def account() -> Account:
    return Account(id="acc-1", user_id="user-1", provider_id="aws", name="Production AWS")
