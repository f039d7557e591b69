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
from typing import List, Optional

from dbplane.db.models import VectorIndex, VectorIndexStatus, utc_now
from dbplane.db.ops import DatabaseOps
from dbplane.exceptions import ClusterNotFoundException, VectorIndexNotFoundException, VectorStoreUnavailableError
from dbplane.schema import FilterFieldSpec, SyncResult, VectorFieldSpec
from dbplane.sync.engine import VectorSyncEngine
from dbplane.tasks.scheduler import LocalWatcherScheduler, WatcherScheduler

logger = logging.getLogger(__name__)


class VectorIndexService:
    """Vector index records and the create / build / delete pipeline around the sync engine"""

    def __init__(self, records: DatabaseOps, engine: VectorSyncEngine, watchers: WatcherScheduler = None):
        self.records = records
        self.engine = engine
        self.watchers = watchers or LocalWatcherScheduler(engine)

    def _get_index(self, index_id: str) -> VectorIndex:
        index = self.records.query_vector_index(index_id)
        if index is None:
            raise VectorIndexNotFoundException(index_id)
        return index

    def _set_status(self, index: VectorIndex, status: VectorIndexStatus, error: str = None) -> VectorIndex:
        index.status = status
        index.error_message = error
        return self.records.save_vector_index(index)

    def create_vector_index(
        self,
        cluster_id: str,
        name: str,
        database: str,
        collection: str,
        vector_fields: List[VectorFieldSpec],
        filter_fields: Optional[List[FilterFieldSpec]] = None,
        text_fields: Optional[List[str]] = None,
    ) -> VectorIndex:
        """Register a pending index; build_vector_index does the work"""
        cluster = self.records.query_cluster(cluster_id)
        if cluster is None:
            raise ClusterNotFoundException(cluster_id)
        if not cluster.vector_search_enabled:
            raise VectorStoreUnavailableError(cluster_id)
        if not vector_fields:
            raise ValueError("A vector index needs at least one vector field")

        index = VectorIndex(
            cluster_id=cluster_id,
            name=name,
            database=database,
            collection=collection,
            vector_fields=[field.model_dump(mode="json") for field in vector_fields],
            filter_fields=[field.model_dump(mode="json") for field in filter_fields or []],
            text_fields=list(text_fields or []),
            status=VectorIndexStatus.PENDING,
        )
        index = self.records.save_vector_index(index)
        logger.info(f"Registered vector index {index.id} on {database}.{collection} of cluster {cluster_id}")
        return index

    def build_vector_index(self, index_id: str, batch_size: Optional[int] = None) -> SyncResult:
        """Create the target collection, run a bulk sync, then start following the change feed"""
        index = self._get_index(index_id)
        index.build_started_at = utc_now()
        index = self._set_status(index, VectorIndexStatus.BUILDING)

        try:
            self.engine.create_target_collection(index_id)
            result = self.engine.bulk_sync(index_id, batch_size)
            self.watchers.start_watcher(index_id)
        except Exception as e:
            logger.error(f"Building vector index {index_id} failed: {e}")
            self._set_status(self._get_index(index_id), VectorIndexStatus.FAILED, str(e))
            raise

        index = self._get_index(index_id)
        index.build_completed_at = utc_now()
        self._set_status(index, VectorIndexStatus.READY)
        return result

    def delete_vector_index(self, index_id: str) -> bool:
        index = self.records.query_vector_index(index_id)
        if index is None:
            return False
        index = self._set_status(index, VectorIndexStatus.DELETING)

        self.watchers.stop_watcher(index_id)
        try:
            self.engine.delete_target_collection(index_id)
        except (ClusterNotFoundException, VectorStoreUnavailableError):
            logger.info(f"Cluster of index {index_id} has no vector store left, dropping the record only")
        except Exception as e:
            logger.error(f"Deleting the target collection of index {index_id} failed: {e}")
            self._set_status(index, VectorIndexStatus.FAILED, str(e))
            raise

        self.records.delete_vector_index(index_id)
        logger.info(f"Vector index {index_id} deleted")
        return True

    def resume_watchers(self, cluster_id: str = None) -> int:
        """Restart watchers for ready indexes in this process; the watcher host calls it on startup"""
        started = 0
        for index in self.records.query_vector_indexes(cluster_id=cluster_id, statuses=[VectorIndexStatus.READY]):
            try:
                if self.engine.start_watcher(index.id):
                    started += 1
            except Exception as e:
                logger.warning(f"Could not resume watcher for index {index.id}: {e}")
        return started
