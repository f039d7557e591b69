# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from dbplane.schema import DatabaseUserSpec

logger = logging.getLogger(__name__)

LIFECYCLE_QUEUE = "lifecycle"
WATCHER_QUEUE = "watchers"


class JobType(str, Enum):
    CREATE_CLUSTER = "CREATE_CLUSTER"
    RESIZE_CLUSTER = "RESIZE_CLUSTER"
    PAUSE_CLUSTER = "PAUSE_CLUSTER"
    RESUME_CLUSTER = "RESUME_CLUSTER"
    DELETE_CLUSTER = "DELETE_CLUSTER"
    BACKUP_CLUSTER = "BACKUP_CLUSTER"
    RESTORE_CLUSTER = "RESTORE_CLUSTER"
    SYNC_STATUS = "SYNC_STATUS"
    ENABLE_EXTERNAL_ACCESS = "ENABLE_EXTERNAL_ACCESS"
    UPDATE_NETWORK_POLICY = "UPDATE_NETWORK_POLICY"
    CREATE_DATABASE_USER = "CREATE_DATABASE_USER"
    UPDATE_DATABASE_USER = "UPDATE_DATABASE_USER"
    DELETE_DATABASE_USER = "DELETE_DATABASE_USER"


@dataclass
class LifecycleJob:
    type: JobType
    target_cluster_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleJob":
        return cls(
            type=JobType(data["type"]),
            target_cluster_id=data["target_cluster_id"],
            payload=data.get("payload") or {},
        )


class JobResult:
    """Represents the result of a job execution"""

    def __init__(self, job_id: str, success: bool = True, error: str = None, data: Any = None):
        self.job_id = job_id
        self.success = success
        self.error = error
        self.data = data


def execute_job(reconciler, job: LifecycleJob) -> Any:
    """Run one lifecycle job against the reconciler"""
    cluster_id = job.target_cluster_id
    payload = job.payload
    logger.info(f"Running {job.type.value} for cluster {cluster_id}")

    if job.type == JobType.CREATE_CLUSTER:
        return reconciler.create_cluster(cluster_id).id
    elif job.type == JobType.RESIZE_CLUSTER:
        return reconciler.resize_cluster(cluster_id, payload["new_plan"]).plan
    elif job.type == JobType.PAUSE_CLUSTER:
        return reconciler.pause_cluster(cluster_id).status.value
    elif job.type == JobType.RESUME_CLUSTER:
        return reconciler.resume_cluster(cluster_id).status.value
    elif job.type == JobType.DELETE_CLUSTER:
        reconciler.delete_cluster(cluster_id)
        return None
    elif job.type == JobType.BACKUP_CLUSTER:
        return reconciler.create_backup(cluster_id, payload["backup_id"])
    elif job.type == JobType.RESTORE_CLUSTER:
        return reconciler.restore_backup(
            cluster_id,
            payload["restore_id"],
            payload["backup_id"],
            databases=payload.get("databases"),
            collections=payload.get("collections"),
        )
    elif job.type == JobType.SYNC_STATUS:
        cluster = reconciler.refresh_status(cluster_id)
        return cluster.status.value if cluster else None
    elif job.type == JobType.ENABLE_EXTERNAL_ACCESS:
        endpoint = reconciler.enable_external_access(cluster_id)
        return endpoint.model_dump() if endpoint else None
    elif job.type == JobType.UPDATE_NETWORK_POLICY:
        reconciler.update_network_policy(cluster_id, payload.get("allowed_cidrs", []))
        return None
    elif job.type == JobType.CREATE_DATABASE_USER:
        reconciler.create_database_user(cluster_id, DatabaseUserSpec.model_validate(payload["user"]))
        return None
    elif job.type == JobType.UPDATE_DATABASE_USER:
        reconciler.update_database_user(cluster_id, DatabaseUserSpec.model_validate(payload["user"]))
        return None
    elif job.type == JobType.DELETE_DATABASE_USER:
        reconciler.delete_database_user(cluster_id, payload["username"])
        return None
    raise ValueError(f"Unknown job type: {job.type}")


class JobScheduler(ABC):
    """Queue for lifecycle jobs; at most one job per cluster runs at a time"""

    @abstractmethod
    def submit(self, job: LifecycleJob) -> str:
        """
        Submit a lifecycle job

        Returns:
            Job ID for tracking
        """
        pass

    @abstractmethod
    def get_job_status(self, job_id: str) -> Optional[JobResult]:
        pass


class LocalJobScheduler(JobScheduler):
    """Runs jobs synchronously in the caller's thread, one at a time per cluster"""

    def __init__(self, reconciler=None):
        self._reconciler = reconciler
        self._job_counter = 0
        self._results: Dict[str, JobResult] = {}
        self._counter_lock = threading.Lock()
        self._cluster_locks: Dict[str, threading.Lock] = {}

    @property
    def reconciler(self):
        if self._reconciler is None:
            from dbplane.runtime import get_reconciler

            self._reconciler = get_reconciler()
        return self._reconciler

    def _lock_for(self, cluster_id: str) -> threading.Lock:
        with self._counter_lock:
            return self._cluster_locks.setdefault(cluster_id, threading.Lock())

    def submit(self, job: LifecycleJob) -> str:
        with self._counter_lock:
            self._job_counter += 1
            job_id = f"local_job_{self._job_counter}"

        with self._lock_for(job.target_cluster_id):
            try:
                data = execute_job(self.reconciler, job)
                self._results[job_id] = JobResult(job_id, success=True, data=data)
            except Exception as e:
                logger.error(f"Job {job_id} ({job.type.value}) failed: {e}")
                self._results[job_id] = JobResult(job_id, success=False, error=str(e))
        return job_id

    def get_job_status(self, job_id: str) -> Optional[JobResult]:
        return self._results.get(job_id)


class CeleryJobScheduler(JobScheduler):
    """
    Celery implementation of JobScheduler.

    Jobs go to the lifecycle queue; per-cluster ordering relies on that queue
    being consumed by a single-concurrency worker.
    """

    def submit(self, job: LifecycleJob) -> str:
        from dbplane.tasks.lifecycle_tasks import run_lifecycle_job_task

        task = run_lifecycle_job_task.apply_async(args=[job.to_dict()], queue=LIFECYCLE_QUEUE)
        logger.debug(f"Scheduled {job.type.value} task {task.id} for cluster {job.target_cluster_id}")
        return task.id

    def get_job_status(self, job_id: str) -> Optional[JobResult]:
        try:
            from celery.result import AsyncResult

            result = AsyncResult(job_id)

            if result.state == "PENDING":
                return JobResult(job_id, success=False, error="Job pending")
            elif result.state == "SUCCESS":
                return JobResult(job_id, success=True, data=result.result)
            elif result.state == "FAILURE":
                return JobResult(job_id, success=False, error=str(result.info))
            else:
                return JobResult(job_id, success=False, error=f"Job state: {result.state}")

        except Exception as e:
            logger.error(f"Failed to get job status for {job_id}: {str(e)}")
            return JobResult(job_id, success=False, error=str(e))


def create_job_scheduler(scheduler_type: str = "celery", reconciler=None) -> JobScheduler:
    if scheduler_type == "local":
        return LocalJobScheduler(reconciler)
    elif scheduler_type == "celery":
        return CeleryJobScheduler()
    raise ValueError(f"Unknown scheduler type: {scheduler_type}")


class WatcherScheduler(ABC):
    """
    Where change feed watchers start and stop.

    Watchers live in one process only; every other process asks that process
    to start or stop them instead of touching its own registry.
    """

    @abstractmethod
    def start_watcher(self, index_id: str) -> Any:
        pass

    @abstractmethod
    def stop_watcher(self, index_id: str) -> Any:
        pass

    @abstractmethod
    def release_cluster(self, cluster_id: str) -> Any:
        """Stop every watcher reading from the cluster and drop its source connection"""
        pass


class LocalWatcherScheduler(WatcherScheduler):
    """Drives the sync engine of the calling process directly"""

    def __init__(self, engine):
        self.engine = engine

    def start_watcher(self, index_id: str) -> bool:
        return self.engine.start_watcher(index_id)

    def stop_watcher(self, index_id: str) -> bool:
        return self.engine.stop_watcher(index_id)

    def release_cluster(self, cluster_id: str) -> None:
        self.engine.release_cluster(cluster_id)


class CeleryWatcherScheduler(WatcherScheduler):
    """
    Sends watcher requests to the watcher queue.

    That queue must be consumed by exactly one single-concurrency worker
    started with WATCHER_HOST enabled.
    """

    def start_watcher(self, index_id: str) -> str:
        from dbplane.tasks.lifecycle_tasks import start_watcher_task

        return start_watcher_task.apply_async(args=[index_id], queue=WATCHER_QUEUE).id

    def stop_watcher(self, index_id: str) -> str:
        from dbplane.tasks.lifecycle_tasks import stop_watcher_task

        return stop_watcher_task.apply_async(args=[index_id], queue=WATCHER_QUEUE).id

    def release_cluster(self, cluster_id: str) -> str:
        from dbplane.tasks.lifecycle_tasks import release_cluster_watchers_task

        return release_cluster_watchers_task.apply_async(args=[cluster_id], queue=WATCHER_QUEUE).id


def create_watcher_scheduler(scheduler_type: str = "local", engine=None) -> WatcherScheduler:
    if scheduler_type == "local":
        return LocalWatcherScheduler(engine)
    elif scheduler_type == "celery":
        return CeleryWatcherScheduler()
    raise ValueError(f"Unknown scheduler type: {scheduler_type}")
