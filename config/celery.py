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

from celery import Celery

from config.celery_beat_schedule import CELERY_BEAT_SCHEDULE, CELERY_TIMEZONE
from dbplane.config import settings

app = Celery(
    "dbplane",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["dbplane.tasks.lifecycle_tasks"],
)

app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=CELERY_TIMEZONE,
    beat_schedule=CELERY_BEAT_SCHEDULE,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "dbplane.tasks.lifecycle_tasks.run_lifecycle_job_task": {"queue": "lifecycle"},
        "dbplane.tasks.lifecycle_tasks.create_vector_index_task": {"queue": "vector"},
        "dbplane.tasks.lifecycle_tasks.delete_vector_index_task": {"queue": "vector"},
        "dbplane.tasks.lifecycle_tasks.start_watcher_task": {"queue": "watchers"},
        "dbplane.tasks.lifecycle_tasks.stop_watcher_task": {"queue": "watchers"},
        "dbplane.tasks.lifecycle_tasks.release_cluster_watchers_task": {"queue": "watchers"},
    },
)
