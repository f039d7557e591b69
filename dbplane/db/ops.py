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
from typing import Iterable, List, Optional

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from dbplane.config import settings
from dbplane.db.models import Cluster, ClusterStatus, VectorIndex, VectorIndexStatus, utc_now

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str = None):
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        # Watchers and the sweeper touch records from their own threads
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


class DatabaseOps:
    """Record store for clusters and vector indexes, one short session per call"""

    def __init__(self, engine=None):
        self.engine = engine or create_db_engine()

    def create_tables(self):
        SQLModel.metadata.create_all(self.engine)

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _save(self, instance):
        instance.gmt_updated = utc_now()
        with self._session() as session:
            session.add(instance)
            session.commit()
            session.refresh(instance)
        return instance

    # Cluster Operations
    def query_cluster(self, cluster_id: str) -> Optional[Cluster]:
        with self._session() as session:
            return session.get(Cluster, cluster_id)

    def query_clusters(self, statuses: Iterable[ClusterStatus] = None) -> List[Cluster]:
        with self._session() as session:
            stmt = select(Cluster)
            if statuses:
                stmt = stmt.where(Cluster.status.in_(list(statuses)))
            return list(session.exec(stmt).all())

    def save_cluster(self, cluster: Cluster) -> Cluster:
        return self._save(cluster)

    def update_cluster_status(self, cluster_id: str, status: ClusterStatus, message: str = None) -> Optional[Cluster]:
        with self._session() as session:
            cluster = session.get(Cluster, cluster_id)
            if not cluster:
                return None
            cluster.status = status
            cluster.status_message = message
            cluster.gmt_updated = utc_now()
            session.add(cluster)
            session.commit()
            session.refresh(cluster)
            return cluster

    def delete_cluster(self, cluster_id: str) -> bool:
        with self._session() as session:
            cluster = session.get(Cluster, cluster_id)
            if not cluster:
                return False
            session.delete(cluster)
            session.commit()
            return True

    # Vector Index Operations
    def query_vector_index(self, index_id: str) -> Optional[VectorIndex]:
        with self._session() as session:
            return session.get(VectorIndex, index_id)

    def query_vector_indexes(
        self, cluster_id: str = None, statuses: Iterable[VectorIndexStatus] = None
    ) -> List[VectorIndex]:
        with self._session() as session:
            stmt = select(VectorIndex)
            if cluster_id:
                stmt = stmt.where(VectorIndex.cluster_id == cluster_id)
            if statuses:
                stmt = stmt.where(VectorIndex.status.in_(list(statuses)))
            return list(session.exec(stmt).all())

    def save_vector_index(self, index: VectorIndex) -> VectorIndex:
        return self._save(index)

    def update_vector_index_stats(self, index_id: str, document_count: int, index_size_bytes: int):
        with self._session() as session:
            index = session.get(VectorIndex, index_id)
            if not index:
                logger.warning(f"Vector index {index_id} disappeared before stats were written")
                return None
            index.document_count = document_count
            index.index_size_bytes = index_size_bytes
            index.gmt_updated = utc_now()
            session.add(index)
            session.commit()
            session.refresh(index)
            return index

    def delete_vector_index(self, index_id: str) -> bool:
        with self._session() as session:
            index = session.get(VectorIndex, index_id)
            if not index:
                return False
            session.delete(index)
            session.commit()
            return True
