"""
Unit tests for lifecycle job scheduling.

Test Coverage:
=============

1. LifecycleJob serialization for the task queue
2. execute_job dispatch for every job type
3. LocalJobScheduler:
   - records success and failure results
   - jobs for one cluster never overlap
4. End to end through the simulated platform
5. Celery tasks run eagerly with the reconciler patched in
6. Watcher scheduling:
   - local delegation and the watcher queue for Celery
   - only the watcher host resumes watchers on worker start
"""

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from dbplane.db.models import ClusterStatus
from dbplane.exceptions import InvalidStateTransitionError
from dbplane.platform.simulated import SimulatedPlatform
from dbplane.reconciler import ClusterReconciler
from dbplane.schema import DatabaseUserSpec, ExternalEndpoint
from dbplane.tasks.scheduler import (
    CeleryJobScheduler,
    CeleryWatcherScheduler,
    JobType,
    LifecycleJob,
    LocalJobScheduler,
    LocalWatcherScheduler,
    create_job_scheduler,
    create_watcher_scheduler,
    execute_job,
)


class TestLifecycleJob:
    def test_dict_round_trip(self):
        job = LifecycleJob(JobType.RESIZE_CLUSTER, "cls1", {"new_plan": "LARGE"})

        data = job.to_dict()

        assert data == {"type": "RESIZE_CLUSTER", "target_cluster_id": "cls1", "payload": {"new_plan": "LARGE"}}
        assert LifecycleJob.from_dict(data) == job

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            LifecycleJob.from_dict({"type": "EXPLODE", "target_cluster_id": "cls1"})


class TestExecuteJob:
    def test_resize_uses_payload_plan(self):
        reconciler = MagicMock()
        reconciler.resize_cluster.return_value.plan = "LARGE"

        result = execute_job(reconciler, LifecycleJob(JobType.RESIZE_CLUSTER, "cls1", {"new_plan": "LARGE"}))

        assert result == "LARGE"
        reconciler.resize_cluster.assert_called_once_with("cls1", "LARGE")

    def test_restore_passes_filters(self):
        reconciler = MagicMock()
        payload = {"restore_id": "rs1", "backup_id": "bk1", "databases": ["shop"]}

        execute_job(reconciler, LifecycleJob(JobType.RESTORE_CLUSTER, "cls1", payload))

        reconciler.restore_backup.assert_called_once_with("cls1", "rs1", "bk1", databases=["shop"], collections=None)

    def test_user_payload_validated(self):
        reconciler = MagicMock()
        payload = {"user": {"username": "app", "password": "pw", "roles": [{"db": "shop", "role": "read"}]}}

        execute_job(reconciler, LifecycleJob(JobType.CREATE_DATABASE_USER, "cls1", payload))

        user = reconciler.create_database_user.call_args.args[1]
        assert isinstance(user, DatabaseUserSpec)
        assert user.roles[0].role == "read"

    def test_external_access_returns_plain_dict(self):
        reconciler = MagicMock()
        reconciler.enable_external_access.return_value = ExternalEndpoint(host="203.0.113.1", port=30017)

        result = execute_job(reconciler, LifecycleJob(JobType.ENABLE_EXTERNAL_ACCESS, "cls1"))

        assert result == {"host": "203.0.113.1", "port": 30017}

    def test_sync_status_of_missing_cluster(self):
        reconciler = MagicMock()
        reconciler.refresh_status.return_value = None

        assert execute_job(reconciler, LifecycleJob(JobType.SYNC_STATUS, "cls1")) is None


class TestLocalJobScheduler:
    def test_success_and_failure_results(self):
        reconciler = MagicMock()
        reconciler.create_backup.return_value = "backup-bk1"
        reconciler.pause_cluster.side_effect = InvalidStateTransitionError("cls1", "pause", "paused")
        scheduler = LocalJobScheduler(reconciler)

        ok_id = scheduler.submit(LifecycleJob(JobType.BACKUP_CLUSTER, "cls1", {"backup_id": "bk1"}))
        failed_id = scheduler.submit(LifecycleJob(JobType.PAUSE_CLUSTER, "cls1"))

        assert ok_id != failed_id
        ok = scheduler.get_job_status(ok_id)
        assert ok.success is True
        assert ok.data == "backup-bk1"
        failed = scheduler.get_job_status(failed_id)
        assert failed.success is False
        assert "paused" in failed.error
        assert scheduler.get_job_status("local_job_999") is None

    def test_jobs_for_one_cluster_do_not_overlap(self):
        active = []
        overlaps = []

        def slow_backup(cluster_id, backup_id):
            active.append(backup_id)
            if len(active) > 1:
                overlaps.append(list(active))
            time.sleep(0.05)
            active.remove(backup_id)
            return backup_id

        reconciler = MagicMock()
        reconciler.create_backup.side_effect = slow_backup
        scheduler = LocalJobScheduler(reconciler)

        threads = [
            threading.Thread(
                target=scheduler.submit,
                args=(LifecycleJob(JobType.BACKUP_CLUSTER, "cls1", {"backup_id": f"bk{i}"}),),
            )
            for i in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []
        assert reconciler.create_backup.call_count == 4

    def test_lifecycle_against_simulated_platform(self, records, credentials, make_cluster):
        reconciler = ClusterReconciler(records, SimulatedPlatform(delay=0), credentials)
        scheduler = create_job_scheduler("local", reconciler)
        cluster = make_cluster(plan="MEDIUM", status=ClusterStatus.CREATING)

        for job in [
            LifecycleJob(JobType.CREATE_CLUSTER, cluster.id),
            LifecycleJob(JobType.RESIZE_CLUSTER, cluster.id, {"new_plan": "LARGE"}),
            LifecycleJob(JobType.PAUSE_CLUSTER, cluster.id),
            LifecycleJob(JobType.RESUME_CLUSTER, cluster.id),
        ]:
            result = scheduler.get_job_status(scheduler.submit(job))
            assert result.success, result.error

        stored = records.query_cluster(cluster.id)
        assert stored.status == ClusterStatus.READY
        assert stored.plan == "LARGE"

        assert scheduler.get_job_status(scheduler.submit(LifecycleJob(JobType.DELETE_CLUSTER, cluster.id))).success
        assert records.query_cluster(cluster.id) is None


class TestSchedulerFactory:
    def test_known_types(self):
        assert isinstance(create_job_scheduler("local", MagicMock()), LocalJobScheduler)
        assert isinstance(create_job_scheduler("celery"), CeleryJobScheduler)

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            create_job_scheduler("cron")


class TestCeleryTasks:
    def test_lifecycle_task_runs_job(self):
        from dbplane.tasks.lifecycle_tasks import run_lifecycle_job_task

        reconciler = MagicMock()
        reconciler.create_backup.return_value = "backup-bk1"
        job = LifecycleJob(JobType.BACKUP_CLUSTER, "cls1", {"backup_id": "bk1"})

        with patch("dbplane.runtime.get_reconciler", return_value=reconciler):
            result = run_lifecycle_job_task.apply(args=[job.to_dict()])

        assert result.get() == "backup-bk1"

    def test_rejected_job_is_not_retried(self):
        from dbplane.tasks.lifecycle_tasks import run_lifecycle_job_task

        reconciler = MagicMock()
        reconciler.create_cluster.side_effect = InvalidStateTransitionError("cls1", "create", "ready")
        job = LifecycleJob(JobType.CREATE_CLUSTER, "cls1")

        with patch("dbplane.runtime.get_reconciler", return_value=reconciler):
            with pytest.raises(InvalidStateTransitionError):
                run_lifecycle_job_task.apply(args=[job.to_dict()], throw=True)
        assert reconciler.create_cluster.call_count == 1

    def test_refresh_task(self):
        from dbplane.tasks.lifecycle_tasks import refresh_cluster_statuses_task

        reconciler = MagicMock()
        reconciler.refresh_all.return_value = 2

        with patch("dbplane.runtime.get_reconciler", return_value=reconciler):
            assert refresh_cluster_statuses_task.apply().get() == 2

    def test_lifecycle_jobs_routed_to_single_queue(self):
        from dbplane.tasks.lifecycle_tasks import run_lifecycle_job_task

        with patch.object(run_lifecycle_job_task, "apply_async") as apply_async:
            apply_async.return_value.id = "task-1"
            job_id = CeleryJobScheduler().submit(LifecycleJob(JobType.PAUSE_CLUSTER, "cls1"))

        assert job_id == "task-1"
        assert apply_async.call_args.kwargs["queue"] == "lifecycle"


class TestWatcherScheduling:
    def test_local_scheduler_drives_engine(self):
        engine = MagicMock()
        scheduler = create_watcher_scheduler("local", engine)

        scheduler.start_watcher("vdx1")
        scheduler.stop_watcher("vdx1")
        scheduler.release_cluster("cls1")

        assert isinstance(scheduler, LocalWatcherScheduler)
        engine.start_watcher.assert_called_once_with("vdx1")
        engine.stop_watcher.assert_called_once_with("vdx1")
        engine.release_cluster.assert_called_once_with("cls1")

    def test_factory(self):
        assert isinstance(create_watcher_scheduler("celery"), CeleryWatcherScheduler)
        with pytest.raises(ValueError):
            create_watcher_scheduler("cron")

    @pytest.mark.parametrize(
        "method, task_name, argument",
        [
            ("start_watcher", "start_watcher_task", "vdx1"),
            ("stop_watcher", "stop_watcher_task", "vdx1"),
            ("release_cluster", "release_cluster_watchers_task", "cls1"),
        ],
    )
    def test_celery_scheduler_uses_watcher_queue(self, method, task_name, argument):
        from dbplane.tasks import lifecycle_tasks

        task = getattr(lifecycle_tasks, task_name)
        with patch.object(task, "apply_async") as apply_async:
            apply_async.return_value.id = "task-7"
            assert getattr(CeleryWatcherScheduler(), method)(argument) == "task-7"

        assert apply_async.call_args.kwargs["args"] == [argument]
        assert apply_async.call_args.kwargs["queue"] == "watchers"

    def test_watcher_tasks_run_on_host_engine(self):
        from dbplane.tasks.lifecycle_tasks import release_cluster_watchers_task, start_watcher_task, stop_watcher_task

        engine = MagicMock()
        engine.start_watcher.return_value = True
        engine.stop_watcher.return_value = True

        with patch("dbplane.runtime.get_sync_engine", return_value=engine):
            assert start_watcher_task.apply(args=["vdx1"]).get() is True
            assert stop_watcher_task.apply(args=["vdx1"]).get() is True
            release_cluster_watchers_task.apply(args=["cls1"]).get()

        engine.release_cluster.assert_called_once_with("cls1")

    @pytest.mark.parametrize("watcher_host, resumed", [(True, 1), (False, 0)])
    def test_only_watcher_host_resumes_watchers(self, test_settings, watcher_host, resumed):
        from dbplane.tasks import lifecycle_tasks

        service = MagicMock()
        service.resume_watchers.return_value = 3
        host_settings = test_settings.model_copy(update={"watcher_host": watcher_host})

        with patch.object(lifecycle_tasks, "settings", host_settings):
            with patch("dbplane.runtime.get_vector_index_service", return_value=service):
                lifecycle_tasks.setup_worker_services()

        assert service.resume_watchers.call_count == resumed
