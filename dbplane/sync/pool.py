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
import time
from typing import Callable, Dict, Generic, List, Optional, Tuple, TypeVar
from urllib.parse import quote_plus

from pymongo import MongoClient

from dbplane.config import Settings
from dbplane.db.models import ClusterStatus
from dbplane.db.ops import DatabaseOps
from dbplane.exceptions import ClusterNotFoundException, ClusterNotReadyError
from dbplane.service.credentials import CredentialStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedRegistry(Generic[T]):
    """
    Process-wide map of long-lived entries, one per key.

    Creation and removal for a key happen under that key's lock, so two
    callers racing on the same key end up sharing one entry while different
    keys never wait on each other.
    """

    def __init__(self):
        self._entries: Dict[str, T] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def get(self, key: str) -> Optional[T]:
        with self._guard:
            return self._entries.get(key)

    def get_or_create(self, key: str, factory: Callable[[], T]) -> Tuple[T, bool]:
        """Return (entry, created)"""
        with self._lock_for(key):
            entry = self.get(key)
            if entry is not None:
                return entry, False
            entry = factory()
            with self._guard:
                self._entries[key] = entry
            return entry, True

    def remove(self, key: str, expected: Optional[T] = None) -> Optional[T]:
        """Remove and return the entry; with expected, only if it is still that entry"""
        with self._lock_for(key):
            with self._guard:
                entry = self._entries.get(key)
                if entry is None or (expected is not None and entry is not expected):
                    return None
                return self._entries.pop(key)

    def items(self) -> List[Tuple[str, T]]:
        with self._guard:
            return list(self._entries.items())

    def keys(self) -> List[str]:
        with self._guard:
            return list(self._entries.keys())

    def __len__(self):
        with self._guard:
            return len(self._entries)


class PooledConnection:
    def __init__(self, client: MongoClient):
        self.client = client
        self.last_used = time.monotonic()
        # Watchers reading from this client; leased entries are never swept
        self.leases = 0

    def touch(self):
        self.last_used = time.monotonic()


class MongoConnectionPool:
    """
    Source-database clients keyed by cluster id, shared by bulk syncs and watchers.

    Idle clients are closed by a background sweep. Watchers lease their client
    for as long as they run, which keeps it out of the sweep.
    """

    def __init__(
        self,
        records: DatabaseOps,
        credentials: CredentialStore,
        settings: Settings,
        client_factory: Callable[..., MongoClient] = MongoClient,
    ):
        self.records = records
        self.credentials = credentials
        self.settings = settings
        self.client_factory = client_factory
        self._registry: KeyedRegistry[PooledConnection] = KeyedRegistry()
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lease_lock = threading.Lock()

    def get_client(self, cluster_id: str) -> MongoClient:
        entry, created = self._registry.get_or_create(cluster_id, lambda: self._connect(cluster_id))
        if created:
            logger.info(f"Opened source connection for cluster {cluster_id}")
        entry.touch()
        return entry.client

    def acquire(self, cluster_id: str) -> MongoClient:
        """Like get_client, but the client stays open until release_lease or release"""
        while True:
            client = self.get_client(cluster_id)
            with self._lease_lock:
                entry = self._registry.get(cluster_id)
                # A sweep may have closed the client between the two steps
                if entry is not None and entry.client is client:
                    entry.leases += 1
                    return client

    def release_lease(self, cluster_id: str):
        with self._lease_lock:
            entry = self._registry.get(cluster_id)
            if entry is None or entry.leases == 0:
                return
            entry.leases -= 1
            entry.touch()

    def resolve_uri(self, cluster_id: str) -> str:
        cluster = self.records.query_cluster(cluster_id)
        if cluster is None:
            raise ClusterNotFoundException(cluster_id)
        if cluster.status not in (ClusterStatus.READY, ClusterStatus.DEGRADED):
            raise ClusterNotReadyError(cluster_id, cluster.status.value)

        if self.settings.mongodb_dev_uri:
            return self.settings.mongodb_dev_uri

        if not cluster.host or not cluster.credentials_ref:
            raise ClusterNotReadyError(cluster_id, "no connection address")
        creds = self.credentials.decrypt(cluster.credentials_ref)
        uri = (
            f"mongodb://{quote_plus(creds.username)}:{quote_plus(creds.password)}"
            f"@{cluster.host}:{cluster.port}/?authSource=admin"
        )
        if cluster.replica_set:
            uri += f"&replicaSet={cluster.replica_set}"
        return uri

    def _connect(self, cluster_id: str) -> PooledConnection:
        client = self.client_factory(
            self.resolve_uri(cluster_id),
            maxPoolSize=self.settings.pool_max_size,
            minPoolSize=self.settings.pool_min_size,
            serverSelectionTimeoutMS=10000,
        )
        return PooledConnection(client)

    def release(self, cluster_id: str) -> bool:
        entry = self._registry.remove(cluster_id)
        if entry is None:
            return False
        entry.client.close()
        logger.info(f"Closed source connection for cluster {cluster_id}")
        return True

    def sweep_idle(self, now: float = None) -> int:
        """Close clients unused for longer than the idle window, returns how many were closed"""
        now = time.monotonic() if now is None else now
        closed = 0
        for cluster_id, entry in self._registry.items():
            with self._lease_lock:
                if entry.leases > 0 or now - entry.last_used <= self.settings.pool_idle_seconds:
                    continue
                removed = self._registry.remove(cluster_id, expected=entry)
            if removed is not None:
                entry.client.close()
                closed += 1
                logger.info(f"Closed idle source connection for cluster {cluster_id}")
        return closed

    def start_sweeper(self):
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="mongo-pool-sweeper", daemon=True)
        self._sweeper.start()

    def _sweep_loop(self):
        while not self._stop.wait(self.settings.pool_sweep_interval):
            try:
                self.sweep_idle()
            except Exception as e:
                logger.warning(f"Idle connection sweep failed: {e}")

    def close_all(self):
        self._stop.set()
        for cluster_id, _ in self._registry.items():
            self.release(cluster_id)
