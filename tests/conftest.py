"""Shared fixtures and fakes.

The required settings are put in the environment before ``arksql`` is
imported, since ``arksql.core.config.settings`` validates them at import time.
"""
import os

os.environ.setdefault("AZURE_OPENAI_API_KEY", "test-key")
os.environ.setdefault("AZURE_OPENAI_ENDPOINT", "https://example.openai.azure.com")
os.environ.setdefault("AZURE_OPENAI_DEPLOYMENT_NAME", "gpt-test")
os.environ.setdefault("AZURE_OPENAI_EMBEDDING_DEPLOYMENT", "embedding-test")
os.environ.setdefault("VECTOR_STORE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("ALLOW_STATIC_CALLER", "true")
os.environ.setdefault("EMBEDDING_DIMENSIONS", "4")

import pytest

from arksql.cache import TTLCache
from arksql.policy.access import AccessPolicy, CallerContext
from arksql.policy.roles import Role

from tests.fakes import PROTECTED, FakeDatabase


# --- Fixtures --- #
@pytest.fixture
def policy():
    """Policy over the protected tables used throughout the tests."""
    return AccessPolicy(PROTECTED)


@pytest.fixture
def diocese_caller():
    """Tenant-scoped caller for diocese 43."""
    return CallerContext(tenant_id=43, tenant_name="Tucson", role=Role.DIOCESE_MANAGER, user_id="user-43")


@pytest.fixture
def school_caller():
    """Sub-tenant-scoped caller for testing center 51 in diocese 43."""
    return CallerContext(tenant_id=43, tenant_name="Tucson", sub_tenant_id=51, role=Role.SCHOOL_MANAGER, user_id="user-51")


@pytest.fixture
def admin_caller():
    """Unrestricted caller."""
    return CallerContext(role=Role.SUPER_ADMIN, user_id="admin")


@pytest.fixture
def fake_db():
    """Recording connection factory with the default catalog."""
    return FakeDatabase()


@pytest.fixture
def execution_cache():
    """Execution cache with a long TTL so repeated runs hit it."""
    return TTLCache(ttl_seconds=60, max_entries=100, name="execution-test")
