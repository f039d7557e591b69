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

"""
Celery Beat schedule for cluster status refresh
"""

CELERY_BEAT_SCHEDULE = {
    # Reconcile recorded cluster status with the platform every 30 seconds
    'refresh-cluster-statuses': {
        'task': 'dbplane.tasks.lifecycle_tasks.refresh_cluster_statuses_task',
        'schedule': 30.0,
        'options': {
            'expires': 25,  # Avoid overlapping runs
        }
    },
}

CELERY_TIMEZONE = 'UTC'
