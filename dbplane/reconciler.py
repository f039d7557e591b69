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
from typing import Dict, FrozenSet, Iterable, List, Optional

from dbplane.db.models import Cluster, ClusterStatus, VectorIndexStatus
from dbplane.db.ops import DatabaseOps
from dbplane.exceptions import (
    ClusterNotFoundException,
    CrossStrategyResizeError,
    InvalidStateTransitionError,
)
from dbplane.planner import ensure_same_strategy, resources_for
from dbplane.platform.base import ClusterPlatform
from dbplane.schema import (
    BackupSpec,
    ClusterMetrics,
    ClusterRef,
    ClusterSpec,
    ConnectionInfo,
    DatabaseUserSpec,
    ExternalEndpoint,
    ResizeSpec,
    RestoreSpec,
    WorkloadPhase,
    WorkloadStatus,
)
from dbplane.service.credentials import CredentialStore
from dbplane.tasks.scheduler import WatcherScheduler

logger = logging.getLogger(__name__)

_OPERATIONAL = frozenset({ClusterStatus.READY, ClusterStatus.DEGRADED})

# Statuses each operation may start from
ALLOWED_SOURCES: Dict[str, FrozenSet[ClusterStatus]] = {
    "create": frozenset({ClusterStatus.CREATING, ClusterStatus.FAILED}),
    "resize": frozenset({ClusterStatus.READY}),
    "pause": frozenset({ClusterStatus.READY}),
    "resume": frozenset({ClusterStatus.PAUSED}),
    "delete": frozenset(
        {
            ClusterStatus.READY,
            ClusterStatus.DEGRADED,
            ClusterStatus.FAILED,
            ClusterStatus.PAUSED,
            ClusterStatus.DELETING,
        }
    ),
    "backup": _OPERATIONAL,
    "restore": _OPERATIONAL,
    "expose": _OPERATIONAL,
    "manage users": _OPERATIONAL,
    "update network policy": _OPERATIONAL,
}


class ClusterReconciler:
    """
    Lifecycle state machine for clusters.

    Each operation checks the recorded status, records the transitional
    status, drives the platform and writes the outcome back. Platform failures
    leave the cluster failed or degraded and are re-raised to the job runner.
    """

    def __init__(
        self,
        records: DatabaseOps,
        platform: ClusterPlatform,
        credentials: CredentialStore,
        watchers: WatcherScheduler = None,
    ):
        self.records = records
        self.platform = platform
        self.credentials = credentials
        self.watchers = watchers

    def _get_cluster(self, cluster_id: str) -> Cluster:
        cluster = self.records.query_cluster(cluster_id)
        if cluster is None:
            raise ClusterNotFoundException(cluster_id)
        return cluster

    def _check(self, cluster: Cluster, operation: str):
        if cluster.status not in ALLOWED_SOURCES[operation]:
            raise InvalidStateTransitionError(cluster.id, operation, cluster.status.value)

    @staticmethod
    def _ref(cluster: Cluster) -> ClusterRef:
        return ClusterRef(cluster_id=cluster.id, tenant_id=cluster.tenant_id, plan=cluster.plan)

    def _transition(self, cluster: Cluster, status: ClusterStatus, message: str = None) -> Cluster:
        logger.info(f"Cluster {cluster.id}: {cluster.status.value} -> {status.value}")
        cluster.status = status
        cluster.status_message = message
        return self.records.save_cluster(cluster)

    def _fail(self, cluster: Cluster, status: ClusterStatus, operation: str, error: Exception):
        logger.error(f"Failed to {operation} cluster {cluster.id}: {error}")
        self.records.update_cluster_status(cluster.id, status, f"{operation} failed: {error}")

    @staticmethod
    def _apply_connection_info(cluster: Cluster, info: ConnectionInfo):
        cluster.host = info.host
        cluster.port = info.port
        cluster.replica_set = info.replica_set
        cluster.srv_host = info.srv_host
        cluster.external_host = info.external_host
        cluster.external_port = info.external_port
        cluster.vector_db_host = info.vector_db_host
        cluster.vector_db_port = info.vector_db_port

    # Lifecycle
    def create_cluster(self, cluster_id: str) -> Cluster:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "create")
        cluster = self._transition(cluster, ClusterStatus.CREATING)

        try:
            if cluster.credentials_ref:
                raw = self.credentials.decrypt(cluster.credentials_ref)
            else:
                generated = self.credentials.generate()
                raw = generated.raw
                cluster.credentials_ref = generated.encrypted_ref
                cluster = self.records.save_cluster(cluster)

            info = self.platform.create_cluster(
                ClusterSpec(
                    cluster_id=cluster.id,
                    tenant_id=cluster.tenant_id,
                    plan=cluster.plan,
                    mongo_version=cluster.mongo_version,
                    vector_search_enabled=cluster.vector_search_enabled,
                    username=raw.username,
                    password=raw.password,
                )
            )
        except Exception as e:
            self._fail(cluster, ClusterStatus.FAILED, "create", e)
            raise

        self._apply_connection_info(cluster, info)
        cluster.target_members = resources_for(cluster.plan).replicas
        return self._transition(cluster, ClusterStatus.READY)

    def resize_cluster(self, cluster_id: str, new_plan: str) -> Cluster:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "resize")
        # Rejected before anything is recorded or touched
        ensure_same_strategy(cluster.plan, new_plan)
        cluster = self._transition(cluster, ClusterStatus.UPDATING)

        try:
            self.platform.resize_cluster(
                ResizeSpec(
                    cluster_id=cluster.id,
                    tenant_id=cluster.tenant_id,
                    current_plan=cluster.plan,
                    new_plan=new_plan,
                )
            )
        except CrossStrategyResizeError:
            self._transition(cluster, ClusterStatus.READY)
            raise
        except Exception as e:
            self._fail(cluster, ClusterStatus.FAILED, "resize", e)
            raise

        cluster.plan = new_plan.upper()
        cluster.target_members = resources_for(new_plan).replicas
        return self._transition(cluster, ClusterStatus.READY)

    def pause_cluster(self, cluster_id: str) -> Cluster:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "pause")
        cluster = self._transition(cluster, ClusterStatus.PAUSING)

        try:
            if self.watchers:
                self.watchers.release_cluster(cluster.id)
            self.platform.pause_cluster(self._ref(cluster))
        except Exception as e:
            self._fail(cluster, ClusterStatus.DEGRADED, "pause", e)
            raise
        return self._transition(cluster, ClusterStatus.PAUSED)

    def resume_cluster(self, cluster_id: str) -> Cluster:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "resume")
        cluster = self._transition(cluster, ClusterStatus.RESUMING)

        try:
            self.platform.resume_cluster(self._ref(cluster), members=cluster.target_members)
        except Exception as e:
            self._fail(cluster, ClusterStatus.DEGRADED, "resume", e)
            raise

        cluster = self._transition(cluster, ClusterStatus.READY)
        if self.watchers:
            self._restart_watchers(cluster.id)
        return cluster

    def _restart_watchers(self, cluster_id: str):
        for index in self.records.query_vector_indexes(cluster_id=cluster_id, statuses=[VectorIndexStatus.READY]):
            try:
                self.watchers.start_watcher(index.id)
            except Exception as e:
                logger.warning(f"Could not restart watcher for index {index.id}: {e}")

    def delete_cluster(self, cluster_id: str) -> None:
        cluster = self.records.query_cluster(cluster_id)
        if cluster is None:
            logger.info(f"Cluster {cluster_id} is already gone")
            return
        self._check(cluster, "delete")
        cluster = self._transition(cluster, ClusterStatus.DELETING)

        try:
            if self.watchers:
                self.watchers.release_cluster(cluster.id)
            self.platform.delete_cluster(self._ref(cluster))
        except Exception as e:
            self._fail(cluster, ClusterStatus.FAILED, "delete", e)
            raise

        for index in self.records.query_vector_indexes(cluster_id=cluster.id):
            self.records.delete_vector_index(index.id)
        self.records.delete_cluster(cluster.id)
        logger.info(f"Cluster {cluster.id} deleted")

    # Observation
    def get_cluster_status(self, cluster_id: str) -> WorkloadStatus:
        cluster = self.records.query_cluster(cluster_id)
        if cluster is None:
            return WorkloadStatus(phase=WorkloadPhase.NOT_FOUND.value, ready=False, message="Cluster not found")
        return self.platform.get_cluster_status(self._ref(cluster))

    def get_cluster_metrics(self, cluster_id: str) -> ClusterMetrics:
        cluster = self._get_cluster(cluster_id)
        # Paused clusters run no pods
        if cluster.status == ClusterStatus.PAUSED:
            return ClusterMetrics()
        return self.platform.get_cluster_metrics(self._ref(cluster))

    def refresh_status(self, cluster_id: str) -> Optional[Cluster]:
        """Move a running cluster between ready and degraded from what the platform reports"""
        cluster = self.records.query_cluster(cluster_id)
        if cluster is None or cluster.status not in _OPERATIONAL:
            return cluster

        observed = self.platform.get_cluster_status(self._ref(cluster))
        if cluster.status == ClusterStatus.READY and not observed.ready:
            return self._transition(cluster, ClusterStatus.DEGRADED, observed.message)
        if cluster.status == ClusterStatus.DEGRADED and observed.ready:
            return self._transition(cluster, ClusterStatus.READY)
        return cluster

    def refresh_all(self) -> int:
        refreshed = 0
        for cluster in self.records.query_clusters(statuses=_OPERATIONAL):
            try:
                self.refresh_status(cluster.id)
                refreshed += 1
            except Exception as e:
                logger.warning(f"Status refresh of cluster {cluster.id} failed: {e}")
        return refreshed

    # Access
    def enable_external_access(self, cluster_id: str) -> Optional[ExternalEndpoint]:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "expose")
        endpoint = self.platform.enable_external_access(self._ref(cluster))
        if endpoint:
            cluster.external_host = endpoint.host
            cluster.external_port = endpoint.port
            self.records.save_cluster(cluster)
        return endpoint

    def update_network_policy(self, cluster_id: str, allowed_cidrs: Iterable[str]) -> None:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "update network policy")
        self.platform.update_network_policy(self._ref(cluster), list(allowed_cidrs))

    # Backups
    def create_backup(self, cluster_id: str, backup_id: str) -> str:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "backup")
        return self.platform.create_backup(
            BackupSpec(backup_id=backup_id, cluster_id=cluster.id, tenant_id=cluster.tenant_id, plan=cluster.plan)
        )

    def restore_backup(
        self,
        cluster_id: str,
        restore_id: str,
        backup_id: str,
        databases: List[str] = None,
        collections: List[str] = None,
    ) -> str:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "restore")
        return self.platform.restore_backup(
            RestoreSpec(
                restore_id=restore_id,
                backup_id=backup_id,
                cluster_id=cluster.id,
                tenant_id=cluster.tenant_id,
                plan=cluster.plan,
                databases=databases or [],
                collections=collections or [],
            )
        )

    # Database users
    def create_database_user(self, cluster_id: str, user: DatabaseUserSpec) -> None:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "manage users")
        self.platform.create_database_user(self._ref(cluster), user)

    def update_database_user(self, cluster_id: str, user: DatabaseUserSpec) -> None:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "manage users")
        self.platform.update_database_user(self._ref(cluster), user)

    def delete_database_user(self, cluster_id: str, username: str) -> None:
        cluster = self._get_cluster(cluster_id)
        self._check(cluster, "manage users")
        self.platform.delete_database_user(self._ref(cluster), username)
