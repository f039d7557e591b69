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
from typing import Any

from celery.signals import worker_process_init, worker_process_shutdown

from config.celery import app
from dbplane.config import settings
from dbplane.exceptions import (
    ClusterNotFoundException,
    CrossStrategyResizeError,
    InvalidStateTransitionError,
    PlatformPermissionError,
    VectorIndexNotFoundException,
)
from dbplane.tasks.scheduler import JobType, LifecycleJob, execute_job

logger = logging.getLogger(__name__)


class TaskConfig:
    RETRY_COUNTDOWN_LIFECYCLE = 30
    RETRY_MAX_RETRIES_LIFECYCLE = 3
    RETRY_COUNTDOWN_VECTOR_INDEX = 60
    RETRY_MAX_RETRIES_VECTOR_INDEX = 2


# Jobs whose failed state is a valid starting point for another attempt
RETRYABLE_JOBS = {JobType.CREATE_CLUSTER, JobType.DELETE_CLUSTER}

# Errors no retry can fix
FATAL_ERRORS = (
    ClusterNotFoundException,
    CrossStrategyResizeError,
    InvalidStateTransitionError,
    PlatformPermissionError,
    VectorIndexNotFoundException,
)


@worker_process_init.connect
def setup_worker_services(**kwargs):
    """Restart change feed watchers when this worker process is the watcher host"""
    from dbplane.runtime import get_vector_index_service

    if not settings.watcher_host:
        return
    try:
        started = get_vector_index_service().resume_watchers()
        logger.info(f"Resumed {started} vector index watcher(s)")
    except Exception as e:
        logger.error(f"Failed to resume vector index watchers: {e}", exc_info=True)


@worker_process_shutdown.connect
def cleanup_worker_services(**kwargs):
    from dbplane.runtime import shutdown

    shutdown()


@app.task(bind=True)
def run_lifecycle_job_task(self, job_data: dict) -> Any:
    """
    Lifecycle job entry point

    Args:
        job_data: LifecycleJob as a dict
    """
    from dbplane.runtime import get_reconciler

    job = LifecycleJob.from_dict(job_data)
    try:
        return execute_job(get_reconciler(), job)
    except FATAL_ERRORS as e:
        logger.error(f"{job.type.value} for cluster {job.target_cluster_id} rejected: {e}")
        raise
    except Exception as e:
        logger.error(f"{job.type.value} for cluster {job.target_cluster_id} failed: {e}", exc_info=True)
        if job.type in RETRYABLE_JOBS and self.request.retries < TaskConfig.RETRY_MAX_RETRIES_LIFECYCLE:
            raise self.retry(
                exc=e,
                countdown=TaskConfig.RETRY_COUNTDOWN_LIFECYCLE,
                max_retries=TaskConfig.RETRY_MAX_RETRIES_LIFECYCLE,
            )
        raise


@app.task(bind=True)
def create_vector_index_task(self, index_id: str, batch_size: int = None) -> Any:
    """Build a registered vector index: target collection, bulk sync, watcher"""
    from dbplane.runtime import get_vector_index_service

    try:
        result = get_vector_index_service().build_vector_index(index_id, batch_size)
        return result.model_dump()
    except FATAL_ERRORS:
        raise
    except Exception as e:
        logger.error(f"Vector index {index_id} build failed: {e}", exc_info=True)
        if self.request.retries < TaskConfig.RETRY_MAX_RETRIES_VECTOR_INDEX:
            raise self.retry(
                exc=e,
                countdown=TaskConfig.RETRY_COUNTDOWN_VECTOR_INDEX,
                max_retries=TaskConfig.RETRY_MAX_RETRIES_VECTOR_INDEX,
            )
        raise


@app.task(bind=True)
def delete_vector_index_task(self, index_id: str) -> Any:
    from dbplane.runtime import get_vector_index_service

    try:
        return get_vector_index_service().delete_vector_index(index_id)
    except Exception as e:
        logger.error(f"Vector index {index_id} deletion failed: {e}", exc_info=True)
        raise


def _watcher_engine():
    from dbplane.runtime import get_sync_engine

    if not settings.watcher_host:
        logger.warning("Watcher task received by a process that is not the watcher host")
    return get_sync_engine()


@app.task
def start_watcher_task(index_id: str) -> bool:
    return _watcher_engine().start_watcher(index_id)


@app.task
def stop_watcher_task(index_id: str) -> bool:
    return _watcher_engine().stop_watcher(index_id)


@app.task
def release_cluster_watchers_task(cluster_id: str) -> None:
    _watcher_engine().release_cluster(cluster_id)


@app.task
def refresh_cluster_statuses_task():
    """Periodic task moving clusters between ready and degraded"""
    try:
        from dbplane.runtime import get_reconciler

        refreshed = get_reconciler().refresh_all()
        logger.info(f"Refreshed status of {refreshed} cluster(s)")
        return refreshed
    except Exception as e:
        logger.error(f"Cluster status refresh failed: {e}", exc_info=True)
        raise
