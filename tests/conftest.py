import pytest

from projectflow.domain.identity import JwtIdentityResolver
from projectflow.server.store import ProjectStore

TEST_SECRET = "projectflow-test-secret-0123456789abcdef"


@pytest.fixture
def store(tmp_path):
    """A fresh SQLite-backed project store per test."""
    project_store = ProjectStore(tmp_path / "test.db")
    yield project_store
    project_store.close()


@pytest.fixture
def identity():
    return JwtIdentityResolver(TEST_SECRET)
