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
from datetime import datetime
from numbers import Real
from typing import Any, List, Mapping, Optional

from bson import ObjectId
from qdrant_client import QdrantClient
from qdrant_client.http import models

from dbplane.config import Settings
from dbplane.db.models import VectorIndex
from dbplane.db.ops import DatabaseOps
from dbplane.exceptions import ClusterNotFoundException, VectorStoreUnavailableError
from dbplane.schema import CollectionStats, FilterFieldType, Similarity
from dbplane.sync.identity import (
    get_nested_value,
    payload_key_for,
    point_id_for,
    target_collection_name,
    vector_name_for,
)
from dbplane.sync.pool import KeyedRegistry

logger = logging.getLogger(__name__)

DISTANCES = {
    Similarity.COSINE: models.Distance.COSINE,
    Similarity.EUCLIDEAN: models.Distance.EUCLID,
    Similarity.DOT_PRODUCT: models.Distance.DOT,
}

PAYLOAD_SCHEMAS = {
    FilterFieldType.STRING: models.PayloadSchemaType.KEYWORD,
    FilterFieldType.OBJECT_ID: models.PayloadSchemaType.KEYWORD,
    FilterFieldType.NUMBER: models.PayloadSchemaType.FLOAT,
    FilterFieldType.BOOLEAN: models.PayloadSchemaType.BOOL,
    FilterFieldType.DATE: models.PayloadSchemaType.DATETIME,
}

HNSW_M = 16
HNSW_EF_CONSTRUCT = 128
INDEXING_THRESHOLD = 20000
FLOAT32_BYTES = 4


class VectorStoreClients:
    """Qdrant clients keyed by endpoint URL"""

    def __init__(self, records: DatabaseOps, settings: Settings, client_factory=QdrantClient):
        self.records = records
        self.settings = settings
        self.client_factory = client_factory
        self._registry: KeyedRegistry[QdrantClient] = KeyedRegistry()

    def url_for(self, cluster_id: str) -> str:
        if self.settings.qdrant_url:
            return self.settings.qdrant_url
        cluster = self.records.query_cluster(cluster_id)
        if cluster is None:
            raise ClusterNotFoundException(cluster_id)
        if not cluster.vector_search_enabled or not cluster.vector_db_host:
            raise VectorStoreUnavailableError(cluster_id)
        return f"http://{cluster.vector_db_host}:{cluster.vector_db_port}"

    def get_client(self, cluster_id: str) -> QdrantClient:
        url = self.url_for(cluster_id)
        client, created = self._registry.get_or_create(
            url, lambda: self.client_factory(url=url, timeout=self.settings.qdrant_timeout)
        )
        if created:
            logger.info(f"Opened vector store client for {url}")
        return client

    def close_all(self):
        for url, client in self._registry.items():
            if self._registry.remove(url, expected=client) is not None:
                client.close()


def collection_name_for(index: VectorIndex) -> str:
    return target_collection_name(index.database, index.collection, index.name)


def vectors_config_for(index: VectorIndex):
    """A single unnamed vector for one field, named vectors keyed by path otherwise"""
    fields = index.get_vector_fields()
    if len(fields) == 1:
        field = fields[0]
        return models.VectorParams(size=field.dimensions, distance=DISTANCES[field.similarity])
    return {
        vector_name_for(field.path): models.VectorParams(size=field.dimensions, distance=DISTANCES[field.similarity])
        for field in fields
    }


def create_target_collection(client: QdrantClient, index: VectorIndex) -> str:
    name = collection_name_for(index)
    if client.collection_exists(collection_name=name):
        logger.info(f"Vector collection {name} already exists")
        return name

    client.create_collection(
        collection_name=name,
        vectors_config=vectors_config_for(index),
        hnsw_config=models.HnswConfigDiff(m=HNSW_M, ef_construct=HNSW_EF_CONSTRUCT),
        optimizers_config=models.OptimizersConfigDiff(indexing_threshold=INDEXING_THRESHOLD),
    )
    for field in index.get_filter_fields():
        client.create_payload_index(
            collection_name=name,
            field_name=payload_key_for(field.path),
            field_schema=PAYLOAD_SCHEMAS[field.type],
        )
    logger.info(f"Created vector collection {name} for index {index.id}")
    return name


def delete_target_collection(client: QdrantClient, index: VectorIndex) -> bool:
    name = collection_name_for(index)
    if not client.collection_exists(collection_name=name):
        return False
    client.delete_collection(collection_name=name)
    logger.info(f"Deleted vector collection {name}")
    return True


def collection_stats(client: QdrantClient, index: VectorIndex) -> CollectionStats:
    info = client.get_collection(collection_name=collection_name_for(index))
    points = info.points_count or 0
    return CollectionStats(
        point_count=points, index_size_bytes=points * index.primary_vector_field().dimensions * FLOAT32_BYTES
    )


def _valid_vector(value: Any, dimensions: int) -> Optional[List[float]]:
    if not isinstance(value, (list, tuple)) or len(value) != dimensions:
        return None
    if not all(isinstance(x, Real) and not isinstance(x, bool) for x in value):
        return None
    return [float(x) for x in value]


def _payload_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class PointBuilder:
    """Turns source documents into points for one index"""

    def __init__(self, index: VectorIndex):
        self.vector_fields = index.get_vector_fields()
        self.filter_fields = index.get_filter_fields()
        self.text_fields = list(index.text_fields or [])
        self.primary = self.vector_fields[0]
        self.named = len(self.vector_fields) > 1

    def build(self, document: Mapping) -> Optional[models.PointStruct]:
        """None when the document has no usable primary vector"""
        key = document.get("_id")
        if key is None:
            return None
        vector = _valid_vector(get_nested_value(document, self.primary.path), self.primary.dimensions)
        if vector is None:
            return None

        if self.named:
            vectors = {vector_name_for(self.primary.path): vector}
            for field in self.vector_fields[1:]:
                extra = _valid_vector(get_nested_value(document, field.path), field.dimensions)
                if extra is not None:
                    vectors[vector_name_for(field.path)] = extra
        else:
            vectors = vector

        payload = {"_mongo_id": str(key)}
        for path in [field.path for field in self.filter_fields] + self.text_fields:
            value = get_nested_value(document, path)
            if value is not None:
                payload[payload_key_for(path)] = _payload_value(value)

        return models.PointStruct(id=point_id_for(key), vector=vectors, payload=payload)
