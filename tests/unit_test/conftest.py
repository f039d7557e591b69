"""
Shared fixtures for unit tests.

Kubernetes, MongoDB and Qdrant are replaced by mocks; records live in an
in-memory SQLite database.
"""

from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from dbplane.config import Settings
from dbplane.db.models import Cluster, ClusterStatus
from dbplane.db.ops import DatabaseOps, create_db_engine
from dbplane.service.credentials import CredentialStore


def api_error(status: int, reason: str = "error") -> ApiException:
    return ApiException(status=status, reason=reason)


@pytest.fixture
def test_settings():
    return Settings(
        environment="test",
        namespace_prefix="dbplane-",
        simulation_delay=0,
        credentials_encryption_key="unit-test-key",
        database_url="sqlite://",
        upsert_retry_attempts=2,
    )


@pytest.fixture
def records():
    ops = DatabaseOps(create_db_engine("sqlite://"))
    ops.create_tables()
    return ops


@pytest.fixture
def credentials():
    return CredentialStore("unit-test-key")


@pytest.fixture
def kube_clients():
    clients = MagicMock()
    clients.core = MagicMock()
    clients.apps = MagicMock()
    clients.batch = MagicMock()
    clients.networking = MagicMock()
    clients.rbac = MagicMock()
    clients.custom = MagicMock()
    return clients


@pytest.fixture
def make_cluster(records, credentials):
    """Persist a cluster record with the given plan and status"""

    def _make(plan="DEV", status=ClusterStatus.READY, vector_search_enabled=False, **fields):
        cluster = Cluster(
            tenant_id=fields.pop("tenant_id", "tenant1"),
            name=fields.pop("name", "orders"),
            plan=plan,
            status=status,
            vector_search_enabled=vector_search_enabled,
            **fields,
        )
        return records.save_cluster(cluster)

    return _make
