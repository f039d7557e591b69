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
import random
import time
from typing import Iterable, Optional

from dbplane.planner import DeploymentStrategy, resources_for, service_name_for, strategy_for
from dbplane.platform.base import ClusterPlatform
from dbplane.platform.naming import (
    MONGO_PORT,
    QDRANT_HTTP_PORT,
    cluster_local_host,
    companion_name_for,
    job_name,
    namespace_for,
    resource_name_for,
)
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

logger = logging.getLogger(__name__)

# Documentation address block (RFC 5737)
SIMULATED_EXTERNAL_HOST = "203.0.113.1"
SIMULATED_NODE_PORT = 30017


class SimulatedPlatform(ClusterPlatform):
    """
    Stand-in used when no Kubernetes API server is reachable.

    Every mutation waits a fixed delay and returns payloads shaped exactly like
    the live ones, so the lifecycle above it behaves the same in development.
    """

    simulated = True

    def __init__(self, delay: float = 2.0, prefix: str = None):
        self.delay = delay
        self.prefix = prefix

    def _simulate(self, operation: str, target: str):
        logger.info(f"[SIM] {operation} {target}")
        if self.delay > 0:
            time.sleep(self.delay)

    def ensure_namespace(self, tenant_id: str) -> str:
        namespace = namespace_for(tenant_id, self.prefix)
        logger.info(f"[SIM] ensure namespace {namespace}")
        return namespace

    def delete_namespace(self, tenant_id: str) -> bool:
        self._simulate("delete namespace", namespace_for(tenant_id, self.prefix))
        return True

    def create_cluster(self, spec: ClusterSpec) -> ConnectionInfo:
        namespace = namespace_for(spec.tenant_id, self.prefix)
        resource_name = resource_name_for(spec.cluster_id)
        self._simulate(f"create cluster ({strategy_for(spec.plan).value})", resource_name)

        host = cluster_local_host(service_name_for(resource_name, spec.plan), namespace)
        info = ConnectionInfo(
            host=host,
            port=MONGO_PORT,
            external_host=SIMULATED_EXTERNAL_HOST,
            external_port=SIMULATED_NODE_PORT,
        )
        if strategy_for(spec.plan) == DeploymentStrategy.REPLICA_SET:
            info.replica_set = resource_name
            info.srv_host = host
        if spec.vector_search_enabled:
            info.vector_db_host = cluster_local_host(companion_name_for(spec.cluster_id), namespace)
            info.vector_db_port = QDRANT_HTTP_PORT
        return info

    def _resize_cluster(self, spec: ResizeSpec) -> None:
        self._simulate(f"resize cluster to {spec.new_plan}", resource_name_for(spec.cluster_id))

    def pause_cluster(self, ref: ClusterRef) -> None:
        self._simulate("pause cluster", resource_name_for(ref.cluster_id))

    def resume_cluster(self, ref: ClusterRef, members: Optional[int] = None) -> None:
        members = members or resources_for(ref.plan).replicas
        self._simulate(f"resume cluster with {members} members", resource_name_for(ref.cluster_id))

    def delete_cluster(self, ref: ClusterRef) -> None:
        self._simulate("delete cluster", resource_name_for(ref.cluster_id))

    def get_cluster_status(self, ref: ClusterRef) -> WorkloadStatus:
        replicas = resources_for(ref.plan).replicas
        return WorkloadStatus(
            phase=WorkloadPhase.RUNNING.value,
            ready=True,
            replicas=replicas,
            ready_replicas=replicas,
            message="Simulated cluster",
        )

    def get_cluster_metrics(self, ref: ClusterRef) -> ClusterMetrics:
        return ClusterMetrics(
            cpu_percent=random.uniform(10, 60),
            memory_mib=random.uniform(20, 80),
            storage_percent=random.uniform(10, 50),
            connections=random.randint(5, 54),
        )

    def enable_external_access(self, ref: ClusterRef) -> Optional[ExternalEndpoint]:
        self._simulate("enable external access", resource_name_for(ref.cluster_id))
        return ExternalEndpoint(host=SIMULATED_EXTERNAL_HOST, port=SIMULATED_NODE_PORT)

    def create_backup(self, spec: BackupSpec) -> str:
        name = job_name("backup", spec.backup_id)
        self._simulate("backup job", name)
        return name

    def restore_backup(self, spec: RestoreSpec) -> str:
        name = job_name("restore", spec.restore_id)
        self._simulate("restore job", name)
        return name

    def create_database_user(self, ref: ClusterRef, user: DatabaseUserSpec) -> None:
        self._simulate(f"create database user {user.username} on", resource_name_for(ref.cluster_id))

    def update_database_user(self, ref: ClusterRef, user: DatabaseUserSpec) -> None:
        self._simulate(f"update database user {user.username} on", resource_name_for(ref.cluster_id))

    def delete_database_user(self, ref: ClusterRef, username: str) -> None:
        self._simulate(f"delete database user {username} from", resource_name_for(ref.cluster_id))

    def update_network_policy(self, ref: ClusterRef, allowed_cidrs: Iterable[str]) -> None:
        self._simulate(f"allow {len(list(allowed_cidrs))} CIDR(s) on", resource_name_for(ref.cluster_id))
