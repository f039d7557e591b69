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

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from dbplane.planner import ensure_same_strategy
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
    WorkloadStatus,
)


class ClusterPlatform(ABC):
    """
    Capability interface over the orchestration platform.

    Implementations take plain ids and plan names and return view models; no
    platform object ever leaves an implementation.
    """

    simulated = False

    @abstractmethod
    def ensure_namespace(self, tenant_id: str) -> str:
        pass

    @abstractmethod
    def delete_namespace(self, tenant_id: str) -> bool:
        pass

    @abstractmethod
    def create_cluster(self, spec: ClusterSpec) -> ConnectionInfo:
        """Create the workload, secrets, policies and access points for a cluster"""
        pass

    def resize_cluster(self, spec: ResizeSpec) -> None:
        """
        Move a cluster to another plan of the same deployment strategy.

        Raises:
            CrossStrategyResizeError: before anything is touched, when the plans
                need different strategies
        """
        ensure_same_strategy(spec.current_plan, spec.new_plan)
        self._resize_cluster(spec)

    @abstractmethod
    def _resize_cluster(self, spec: ResizeSpec) -> None:
        pass

    @abstractmethod
    def pause_cluster(self, ref: ClusterRef) -> None:
        pass

    @abstractmethod
    def resume_cluster(self, ref: ClusterRef, members: Optional[int] = None) -> None:
        pass

    @abstractmethod
    def delete_cluster(self, ref: ClusterRef) -> None:
        """Remove everything belonging to the cluster; absent objects are not an error"""
        pass

    @abstractmethod
    def get_cluster_status(self, ref: ClusterRef) -> WorkloadStatus:
        """Observed workload status; never raises"""
        pass

    @abstractmethod
    def get_cluster_metrics(self, ref: ClusterRef) -> ClusterMetrics:
        """Current CPU and memory usage; zeros when no metrics source answers"""
        pass

    @abstractmethod
    def enable_external_access(self, ref: ClusterRef) -> Optional[ExternalEndpoint]:
        pass

    @abstractmethod
    def create_backup(self, spec: BackupSpec) -> str:
        pass

    @abstractmethod
    def restore_backup(self, spec: RestoreSpec) -> str:
        pass

    @abstractmethod
    def create_database_user(self, ref: ClusterRef, user: DatabaseUserSpec) -> None:
        pass

    @abstractmethod
    def update_database_user(self, ref: ClusterRef, user: DatabaseUserSpec) -> None:
        pass

    @abstractmethod
    def delete_database_user(self, ref: ClusterRef, username: str) -> None:
        pass

    @abstractmethod
    def update_network_policy(self, ref: ClusterRef, allowed_cidrs: Iterable[str]) -> None:
        pass
