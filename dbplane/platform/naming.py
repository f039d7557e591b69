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

from dbplane.config import settings

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "dbplane"
CLUSTER_LABEL = "dbplane.io/cluster"
TENANT_LABEL = "dbplane.io/tenant"
PLAN_LABEL = "dbplane.io/plan"

MONGO_PORT = 27017
QDRANT_HTTP_PORT = 6333
QDRANT_GRPC_PORT = 6334


def namespace_for(tenant_id: str, prefix: str = None) -> str:
    if prefix is None:
        prefix = settings.namespace_prefix
    return f"{prefix}{tenant_id}".lower()


def resource_name_for(cluster_id: str) -> str:
    return f"mongo-{cluster_id}".lower()


def companion_name_for(cluster_id: str) -> str:
    return f"qdrant-{cluster_id}".lower()


def admin_secret_name(resource_name: str) -> str:
    return f"{resource_name}-admin-password"


def user_secret_name(resource_name: str, username: str) -> str:
    return f"{resource_name}-user-{username}".lower()


def external_service_name(resource_name: str) -> str:
    return f"{resource_name}-external"


def backup_claim_name(resource_name: str) -> str:
    return f"{resource_name}-backups"


def network_policy_name(resource_name: str) -> str:
    return f"{resource_name}-network-policy"


def cluster_local_host(service_name: str, namespace: str) -> str:
    return f"{service_name}.{namespace}.svc.cluster.local"


def job_name(kind: str, object_id: str) -> str:
    # Job names are DNS labels
    return f"{kind}-{object_id}"[:63].lower()


def cluster_labels(resource_name: str, **extra) -> dict:
    labels = {MANAGED_BY_LABEL: MANAGED_BY, CLUSTER_LABEL: resource_name}
    labels.update(extra)
    return labels
