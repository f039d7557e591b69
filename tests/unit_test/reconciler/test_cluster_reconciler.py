"""
Unit tests for ClusterReconciler.

Test Coverage:
=============

1. Lifecycle transitions against the simulated platform:
   - create -> ready with connection info, credentials and target members
   - resize within a strategy, pause, resume, delete

2. Rejections:
   - Cross-strategy resize leaves status and plan unchanged
   - Operations from disallowed statuses raise InvalidStateTransitionError

3. Failure handling:
   - Platform failures record failed or degraded and re-raise

4. Idempotency:
   - Deleting a missing cluster is a no-op
   - Re-running create after a failure reuses the stored credentials

5. Status refresh between ready and degraded, and cluster metrics
"""

from unittest.mock import MagicMock

import pytest

from dbplane.db.models import ClusterStatus, VectorIndex, VectorIndexStatus
from dbplane.exceptions import (
    ClusterNotFoundException,
    CrossStrategyResizeError,
    InvalidStateTransitionError,
)
from dbplane.platform.simulated import SimulatedPlatform
from dbplane.reconciler import ClusterReconciler
from dbplane.schema import ClusterMetrics, DatabaseUserSpec, WorkloadStatus


@pytest.fixture
def platform():
    return MagicMock(wraps=SimulatedPlatform(delay=0, prefix="dbplane-"))


@pytest.fixture
def watchers():
    return MagicMock()


@pytest.fixture
def reconciler(records, platform, credentials, watchers):
    return ClusterReconciler(records, platform, credentials, watchers=watchers)


def _status(records, cluster_id):
    return records.query_cluster(cluster_id).status


def _index(cluster_id, name, status=VectorIndexStatus.PENDING):
    return VectorIndex(cluster_id=cluster_id, name=name, database="shop", collection="items", status=status)


class TestCreate:
    def test_create_reaches_ready(self, reconciler, records, make_cluster):
        cluster = make_cluster(plan="LARGE", status=ClusterStatus.CREATING)

        result = reconciler.create_cluster(cluster.id)

        assert result.status == ClusterStatus.READY
        stored = records.query_cluster(cluster.id)
        assert stored.status == ClusterStatus.READY
        assert stored.replica_set == f"mongo-{cluster.id}".lower()
        assert stored.port == 27017
        assert stored.target_members == 3
        assert stored.credentials_ref

    def test_password_never_stored_in_plain_text(self, reconciler, records, credentials, platform, make_cluster):
        cluster = make_cluster(status=ClusterStatus.CREATING)

        reconciler.create_cluster(cluster.id)

        spec = platform.create_cluster.call_args.args[0]
        stored = records.query_cluster(cluster.id)
        assert spec.password not in stored.credentials_ref
        assert credentials.decrypt(stored.credentials_ref).password == spec.password

    def test_retry_reuses_stored_credentials(self, reconciler, records, platform, make_cluster):
        cluster = make_cluster(status=ClusterStatus.CREATING)
        platform.create_cluster.side_effect = RuntimeError("api server timeout")

        with pytest.raises(RuntimeError):
            reconciler.create_cluster(cluster.id)
        assert _status(records, cluster.id) == ClusterStatus.FAILED
        first_password = platform.create_cluster.call_args.args[0].password

        platform.create_cluster.side_effect = None
        reconciler.create_cluster(cluster.id)

        assert _status(records, cluster.id) == ClusterStatus.READY
        assert platform.create_cluster.call_args.args[0].password == first_password

    def test_create_from_ready_rejected(self, reconciler, make_cluster):
        cluster = make_cluster(status=ClusterStatus.READY)

        with pytest.raises(InvalidStateTransitionError):
            reconciler.create_cluster(cluster.id)

    def test_unknown_cluster(self, reconciler):
        with pytest.raises(ClusterNotFoundException):
            reconciler.create_cluster("cls-missing")


class TestResize:
    def test_resize_within_strategy(self, reconciler, records, make_cluster):
        cluster = make_cluster(plan="MEDIUM", target_members=1)

        reconciler.resize_cluster(cluster.id, "large")

        stored = records.query_cluster(cluster.id)
        assert stored.status == ClusterStatus.READY
        assert stored.plan == "LARGE"
        assert stored.target_members == 3

    def test_cross_strategy_resize_leaves_cluster_untouched(self, reconciler, records, platform, make_cluster):
        cluster = make_cluster(plan="DEV")

        with pytest.raises(CrossStrategyResizeError):
            reconciler.resize_cluster(cluster.id, "LARGE")

        stored = records.query_cluster(cluster.id)
        assert stored.status == ClusterStatus.READY
        assert stored.plan == "DEV"
        platform.resize_cluster.assert_not_called()

    def test_platform_failure_marks_failed(self, reconciler, records, platform, make_cluster):
        cluster = make_cluster(plan="SMALL")
        platform.resize_cluster.side_effect = RuntimeError("patch rejected")

        with pytest.raises(RuntimeError):
            reconciler.resize_cluster(cluster.id, "DEV")

        stored = records.query_cluster(cluster.id)
        assert stored.status == ClusterStatus.FAILED
        assert "patch rejected" in stored.status_message
        assert stored.plan == "SMALL"

    def test_resize_while_paused_rejected(self, reconciler, make_cluster):
        cluster = make_cluster(plan="SMALL", status=ClusterStatus.PAUSED)

        with pytest.raises(InvalidStateTransitionError):
            reconciler.resize_cluster(cluster.id, "DEV")


class TestPauseResume:
    def test_pause_then_resume_restores_members(self, reconciler, records, platform, watchers, make_cluster):
        cluster = make_cluster(plan="XLARGE", target_members=3)

        reconciler.pause_cluster(cluster.id)
        assert _status(records, cluster.id) == ClusterStatus.PAUSED
        watchers.release_cluster.assert_called_once_with(cluster.id)

        reconciler.resume_cluster(cluster.id)
        assert _status(records, cluster.id) == ClusterStatus.READY
        assert platform.resume_cluster.call_args.kwargs["members"] == 3

    def test_resume_restarts_ready_watchers(self, reconciler, records, watchers, make_cluster):
        cluster = make_cluster(status=ClusterStatus.PAUSED, vector_search_enabled=True)
        ready = records.save_vector_index(_index(cluster.id, "a", VectorIndexStatus.READY))
        records.save_vector_index(_index(cluster.id, "b", VectorIndexStatus.FAILED))

        reconciler.resume_cluster(cluster.id)

        watchers.start_watcher.assert_called_once_with(ready.id)

    def test_pause_failure_marks_degraded(self, reconciler, records, platform, make_cluster):
        cluster = make_cluster()
        platform.pause_cluster.side_effect = RuntimeError("scale failed")

        with pytest.raises(RuntimeError):
            reconciler.pause_cluster(cluster.id)
        assert _status(records, cluster.id) == ClusterStatus.DEGRADED

    def test_resume_requires_paused(self, reconciler, make_cluster):
        cluster = make_cluster(status=ClusterStatus.READY)

        with pytest.raises(InvalidStateTransitionError):
            reconciler.resume_cluster(cluster.id)


class TestDelete:
    def test_delete_removes_records(self, reconciler, records, watchers, make_cluster):
        cluster = make_cluster(vector_search_enabled=True)
        index = records.save_vector_index(_index(cluster.id, "a"))

        reconciler.delete_cluster(cluster.id)

        assert records.query_cluster(cluster.id) is None
        assert records.query_vector_index(index.id) is None
        watchers.release_cluster.assert_called_once_with(cluster.id)

    def test_delete_twice_is_noop(self, reconciler, platform, make_cluster):
        cluster = make_cluster()

        reconciler.delete_cluster(cluster.id)
        reconciler.delete_cluster(cluster.id)

        assert platform.delete_cluster.call_count == 1

    def test_retry_delete_from_deleting(self, reconciler, records, make_cluster):
        cluster = make_cluster(status=ClusterStatus.DELETING)

        reconciler.delete_cluster(cluster.id)
        assert records.query_cluster(cluster.id) is None

    def test_delete_failure_keeps_record(self, reconciler, records, platform, make_cluster):
        cluster = make_cluster()
        platform.delete_cluster.side_effect = RuntimeError("stuck finalizer")

        with pytest.raises(RuntimeError):
            reconciler.delete_cluster(cluster.id)
        assert _status(records, cluster.id) == ClusterStatus.FAILED

    def test_delete_while_creating_rejected(self, reconciler, make_cluster):
        cluster = make_cluster(status=ClusterStatus.CREATING)

        with pytest.raises(InvalidStateTransitionError):
            reconciler.delete_cluster(cluster.id)


class TestStatus:
    def test_missing_cluster_reports_not_found(self, reconciler):
        status = reconciler.get_cluster_status("cls-missing")
        assert status.phase == "not-found"
        assert status.ready is False

    def test_refresh_moves_between_ready_and_degraded(self, reconciler, records, platform, make_cluster):
        cluster = make_cluster()
        platform.get_cluster_status.return_value = WorkloadStatus(phase="pending", ready=False, message="1/3 ready")

        reconciler.refresh_status(cluster.id)
        stored = records.query_cluster(cluster.id)
        assert stored.status == ClusterStatus.DEGRADED
        assert stored.status_message == "1/3 ready"

        platform.get_cluster_status.return_value = WorkloadStatus(phase="running", ready=True)
        reconciler.refresh_status(cluster.id)
        assert _status(records, cluster.id) == ClusterStatus.READY

    def test_refresh_skips_transitional_clusters(self, reconciler, records, platform, make_cluster):
        cluster = make_cluster(status=ClusterStatus.PAUSED)

        reconciler.refresh_status(cluster.id)

        assert _status(records, cluster.id) == ClusterStatus.PAUSED
        platform.get_cluster_status.assert_not_called()

    def test_refresh_all_counts_operational_clusters(self, reconciler, make_cluster):
        make_cluster()
        make_cluster(status=ClusterStatus.DEGRADED)
        make_cluster(status=ClusterStatus.PAUSED)

        assert reconciler.refresh_all() == 2

    def test_metrics_come_from_platform(self, reconciler, platform, make_cluster):
        cluster = make_cluster(plan="LARGE")
        platform.get_cluster_metrics.return_value = ClusterMetrics(cpu_percent=42.0, memory_mib=900.0)

        metrics = reconciler.get_cluster_metrics(cluster.id)

        assert metrics.cpu_percent == 42.0
        ref = platform.get_cluster_metrics.call_args.args[0]
        assert (ref.cluster_id, ref.plan) == (cluster.id, "LARGE")

    def test_paused_cluster_metrics_are_zero(self, reconciler, platform, make_cluster):
        cluster = make_cluster(status=ClusterStatus.PAUSED)

        metrics = reconciler.get_cluster_metrics(cluster.id)

        assert (metrics.cpu_percent, metrics.memory_mib, metrics.connections) == (0, 0, 0)
        platform.get_cluster_metrics.assert_not_called()

    def test_metrics_of_unknown_cluster(self, reconciler):
        with pytest.raises(ClusterNotFoundException):
            reconciler.get_cluster_metrics("cls-missing")


class TestAccessAndUsers:
    def test_external_access_saves_endpoint(self, reconciler, records, make_cluster):
        cluster = make_cluster()

        endpoint = reconciler.enable_external_access(cluster.id)

        stored = records.query_cluster(cluster.id)
        assert (stored.external_host, stored.external_port) == (endpoint.host, endpoint.port)

    def test_backup_requires_running_cluster(self, reconciler, make_cluster):
        cluster = make_cluster(status=ClusterStatus.PAUSED)

        with pytest.raises(InvalidStateTransitionError):
            reconciler.create_backup(cluster.id, "bk1")

    def test_backup_and_restore_return_job_names(self, reconciler, make_cluster):
        cluster = make_cluster()

        assert reconciler.create_backup(cluster.id, "bk1") == "backup-bk1"
        assert reconciler.restore_backup(cluster.id, "rs1", "bk1", databases=["shop"]) == "restore-rs1"

    def test_user_operations_reach_platform(self, reconciler, platform, make_cluster):
        cluster = make_cluster()
        user = DatabaseUserSpec(username="app", password="pw")

        reconciler.create_database_user(cluster.id, user)
        reconciler.update_database_user(cluster.id, user)
        reconciler.delete_database_user(cluster.id, "app")

        assert platform.create_database_user.call_args.args[1] == user
        platform.delete_database_user.assert_called_once()
        assert platform.delete_database_user.call_args.args[1] == "app"

    def test_network_policy_update(self, reconciler, platform, make_cluster):
        cluster = make_cluster()

        reconciler.update_network_policy(cluster.id, ("10.1.0.0/16",))

        assert platform.update_network_policy.call_args.args[1] == ["10.1.0.0/16"]
