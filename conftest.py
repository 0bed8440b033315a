"""
pytest configuration – per-test settings, application and client.

Every test gets its own SQLite file under tmp_path and cheap Argon2
parameters so hashing stays fast.
"""
import pytest
from fastapi.testclient import TestClient

from starter_api.auth.core import CredentialHasher
from starter_api.config import Settings
from starter_api.main import create_app

TEST_SECRET = "test-secret-0123456789-abcdefghijklmnopqrstuvwxyz"


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        environment="test",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        jwt_secret=TEST_SECRET,
        log_format="text",
        argon2_time_cost=1,
        argon2_memory_cost=8192,
        argon2_parallelism=1,
        rate_limit_rps=1000,
        rate_limit_burst=1000,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings_factory(tmp_path):
    def factory(**overrides) -> Settings:
        return make_settings(tmp_path, **overrides)
    return factory


@pytest.fixture
def settings(settings_factory) -> Settings:
    return settings_factory()


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def hasher() -> CredentialHasher:
    return CredentialHasher(time_cost=1, memory_cost=8192, parallelism=1)
