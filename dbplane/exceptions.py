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


class DBPlaneException(Exception):
    """Base exception for control plane errors"""


class UnknownPlanError(DBPlaneException, ValueError):
    def __init__(self, plan: str):
        self.plan = plan
        super().__init__(f"Unknown plan: {plan}")


class CrossStrategyResizeError(DBPlaneException):
    """Resize between plans that need different deployment strategies"""

    def __init__(self, current_plan: str, target_plan: str):
        self.current_plan = current_plan
        self.target_plan = target_plan
        super().__init__(
            f"Cannot resize from {current_plan} to {target_plan}: the plans use different deployment "
            f"strategies, the cluster must be recreated"
        )


class PlatformPermissionError(DBPlaneException):
    """The orchestration platform rejected the request as unauthorized"""

    def __init__(self, operation: str, status: int, reason: str = ""):
        self.operation = operation
        self.status = status
        super().__init__(f"Permission denied during {operation} (HTTP {status}): {reason}")


class ExecError(DBPlaneException):
    def __init__(self, pod: str, message: str):
        self.pod = pod
        super().__init__(f"Command in pod {pod} failed: {message}")


class ClusterNotFoundException(DBPlaneException):
    def __init__(self, cluster_id: str):
        self.cluster_id = cluster_id
        super().__init__(f"Cluster {cluster_id} not found")


class ClusterNotReadyError(DBPlaneException):
    def __init__(self, cluster_id: str, status: str):
        self.cluster_id = cluster_id
        self.status = status
        super().__init__(f"Cluster {cluster_id} is not ready (status: {status})")


class InvalidStateTransitionError(DBPlaneException):
    def __init__(self, cluster_id: str, operation: str, status: str):
        self.cluster_id = cluster_id
        self.operation = operation
        self.status = status
        super().__init__(f"Cannot {operation} cluster {cluster_id} while it is {status}")


class VectorIndexNotFoundException(DBPlaneException):
    def __init__(self, index_id: str):
        self.index_id = index_id
        super().__init__(f"Vector index {index_id} not found")


class VectorStoreUnavailableError(DBPlaneException):
    """Cluster has no vector-search companion to sync into"""

    def __init__(self, cluster_id: str):
        self.cluster_id = cluster_id
        super().__init__(f"Vector search is not enabled for cluster {cluster_id}")
