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

from qdrant_client import QdrantClient
from qdrant_client.http import models
from tenacity import retry, stop_after_attempt, wait_exponential

from dbplane.config import Settings
from dbplane.db.models import VectorIndex
from dbplane.db.ops import DatabaseOps
from dbplane.exceptions import VectorIndexNotFoundException
from dbplane.schema import CollectionStats, SyncResult
from dbplane.sync import target_store
from dbplane.sync.identity import point_id_for
from dbplane.sync.pool import KeyedRegistry, MongoConnectionPool
from dbplane.sync.target_store import FLOAT32_BYTES, PointBuilder, VectorStoreClients, collection_name_for
from dbplane.sync.watcher import ChangeFeedWatcher

logger = logging.getLogger(__name__)

UPSERT_OPERATIONS = ("insert", "update", "replace")


class VectorSyncEngine:
    """
    Keeps Qdrant companion collections in step with MongoDB source collections.

    A full pass over the source collection builds the target, then a change
    feed watcher per index applies incremental changes.
    """

    def __init__(
        self,
        records: DatabaseOps,
        connections: MongoConnectionPool,
        vector_stores: VectorStoreClients,
        settings: Settings,
    ):
        self.records = records
        self.connections = connections
        self.vector_stores = vector_stores
        self.settings = settings
        self._watchers: KeyedRegistry[ChangeFeedWatcher] = KeyedRegistry()

    def _get_index(self, index_id: str) -> VectorIndex:
        index = self.records.query_vector_index(index_id)
        if index is None:
            raise VectorIndexNotFoundException(index_id)
        return index

    def _source_collection(self, index: VectorIndex):
        client = self.connections.get_client(index.cluster_id)
        return client[index.database][index.collection]

    # Target collection
    def create_target_collection(self, index_id: str) -> str:
        index = self._get_index(index_id)
        return target_store.create_target_collection(self.vector_stores.get_client(index.cluster_id), index)

    def delete_target_collection(self, index_id: str) -> bool:
        index = self._get_index(index_id)
        return target_store.delete_target_collection(self.vector_stores.get_client(index.cluster_id), index)

    def collection_stats(self, index_id: str) -> CollectionStats:
        index = self._get_index(index_id)
        return target_store.collection_stats(self.vector_stores.get_client(index.cluster_id), index)

    # Bulk sync
    def _upsert_batch(self, client: QdrantClient, collection_name: str, points: List[models.PointStruct]):
        @retry(
            stop=stop_after_attempt(self.settings.upsert_retry_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            reraise=True,
        )
        def _upsert():
            client.upsert(collection_name=collection_name, points=points, wait=True)

        _upsert()

    def bulk_sync(self, index_id: str, batch_size: Optional[int] = None) -> SyncResult:
        """
        Copy every source document that carries the primary vector into the target.

        Point ids are derived from document keys, so running this again over an
        unchanged source overwrites the same points.
        """
        index = self._get_index(index_id)
        batch_size = batch_size or self.settings.sync_batch_size
        builder = PointBuilder(index)
        client = self.vector_stores.get_client(index.cluster_id)
        collection_name = collection_name_for(index)
        result = SyncResult()

        def flush(batch: List[models.PointStruct]):
            try:
                self._upsert_batch(client, collection_name, batch)
                result.synced += len(batch)
            except Exception as e:
                result.errors += len(batch)
                logger.error(f"Upsert of {len(batch)} points into {collection_name} failed: {e}")

        logger.info(f"Bulk sync of {index.database}.{index.collection} into {collection_name} started")
        cursor = self._source_collection(index).find({builder.primary.path: {"$exists": True}}).batch_size(batch_size)
        batch: List[models.PointStruct] = []
        try:
            for document in cursor:
                point = builder.build(document)
                if point is None:
                    result.errors += 1
                    logger.debug(f"Skipped document {document.get('_id')}: missing or malformed vector")
                    continue
                batch.append(point)
                if len(batch) >= batch_size:
                    flush(batch)
                    batch = []
            if batch:
                flush(batch)
        finally:
            cursor.close()

        self.records.update_vector_index_stats(
            index_id, result.synced, result.synced * builder.primary.dimensions * FLOAT32_BYTES
        )
        logger.info(f"Bulk sync into {collection_name} finished: synced={result.synced} errors={result.errors}")
        return result

    # Change feed
    def apply_change(self, index: VectorIndex, builder: PointBuilder, change: dict):
        """Apply one change event to the target collection"""
        operation = change.get("operationType")
        client = self.vector_stores.get_client(index.cluster_id)
        collection_name = collection_name_for(index)

        if operation in UPSERT_OPERATIONS:
            document = change.get("fullDocument")
            if document is None:
                logger.debug(f"{operation} event without a full document for index {index.id}")
                return
            point = builder.build(document)
            if point is None:
                logger.warning(f"Skipped {operation} of {document.get('_id')}: missing or malformed vector")
                return
            client.upsert(collection_name=collection_name, points=[point], wait=False)
        elif operation == "delete":
            key = (change.get("documentKey") or {}).get("_id")
            if key is None:
                return
            client.delete(
                collection_name=collection_name,
                points_selector=models.PointIdsList(points=[point_id_for(key)]),
                wait=False,
            )
        else:
            logger.debug(f"Ignored {operation} event for index {index.id}")

    def start_watcher(self, index_id: str) -> bool:
        """Start following the source collection; returns False when a watcher already runs"""
        index = self._get_index(index_id)

        def factory() -> ChangeFeedWatcher:
            builder = PointBuilder(index)
            client = self.connections.acquire(index.cluster_id)
            source = client[index.database][index.collection]
            watcher = ChangeFeedWatcher(
                index_id,
                open_stream=lambda: source.watch(full_document="updateLookup", max_await_time_ms=1000),
                apply_change=lambda change: self.apply_change(index, builder, change),
                on_closed=self._watcher_closed,
                queue_size=self.settings.watcher_queue_size,
                cluster_id=index.cluster_id,
            )
            try:
                watcher.start()
            except Exception:
                self.connections.release_lease(index.cluster_id)
                raise
            return watcher

        _, created = self._watchers.get_or_create(index_id, factory)
        if not created:
            logger.debug(f"Watcher for index {index_id} is already running")
        return created

    def _watcher_closed(self, watcher: ChangeFeedWatcher):
        if self._watchers.remove(watcher.index_id, expected=watcher) is not None:
            self.connections.release_lease(watcher.cluster_id)
            logger.warning(f"Deregistered watcher for index {watcher.index_id} after its stream closed")

    def stop_watcher(self, index_id: str) -> bool:
        watcher = self._watchers.remove(index_id)
        if watcher is None:
            return False
        watcher.stop()
        self.connections.release_lease(watcher.cluster_id)
        return True

    def active_watchers(self) -> List[str]:
        return self._watchers.keys()

    def release_cluster(self, cluster_id: str):
        """Stop the watchers reading from a cluster and drop its pooled connection"""
        for index in self.records.query_vector_indexes(cluster_id=cluster_id):
            self.stop_watcher(index.id)
        self.connections.release(cluster_id)

    def shutdown(self):
        for index_id in self.active_watchers():
            self.stop_watcher(index_id)
        self.connections.close_all()
        self.vector_stores.close_all()
