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
Process-wide service instances, built on first use.

Celery workers and embedding applications share one set of connections,
registries and watchers per process.
"""

import functools
import logging

from dbplane.config import settings
from dbplane.db.ops import DatabaseOps, create_db_engine
from dbplane.platform import create_platform
from dbplane.reconciler import ClusterReconciler
from dbplane.service.credentials import CredentialStore
from dbplane.service.vector_index_service import VectorIndexService
from dbplane.sync.engine import VectorSyncEngine
from dbplane.sync.pool import MongoConnectionPool
from dbplane.sync.target_store import VectorStoreClients
from dbplane.tasks.scheduler import WatcherScheduler, create_watcher_scheduler

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=None)
def get_db_ops() -> DatabaseOps:
    ops = DatabaseOps(create_db_engine(settings.database_url))
    ops.create_tables()
    return ops


@functools.lru_cache(maxsize=None)
def get_credential_store() -> CredentialStore:
    return CredentialStore(settings.credentials_encryption_key)


@functools.lru_cache(maxsize=None)
def get_sync_engine() -> VectorSyncEngine:
    records = get_db_ops()
    connections = MongoConnectionPool(records, get_credential_store(), settings)
    connections.start_sweeper()
    return VectorSyncEngine(records, connections, VectorStoreClients(records, settings), settings)


@functools.lru_cache(maxsize=None)
def get_watcher_scheduler() -> WatcherScheduler:
    if settings.watcher_scheduler == "local":
        return create_watcher_scheduler("local", get_sync_engine())
    return create_watcher_scheduler(settings.watcher_scheduler)


@functools.lru_cache(maxsize=None)
def get_reconciler() -> ClusterReconciler:
    return ClusterReconciler(get_db_ops(), create_platform(settings), get_credential_store(), get_watcher_scheduler())


@functools.lru_cache(maxsize=None)
def get_vector_index_service() -> VectorIndexService:
    return VectorIndexService(get_db_ops(), get_sync_engine(), get_watcher_scheduler())


def shutdown():
    if get_sync_engine.cache_info().currsize:
        logger.info("Stopping watchers and closing connections")
        get_sync_engine().shutdown()
