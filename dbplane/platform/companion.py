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

from dbplane.platform.kube import KubeClients, create_or_skip, delete_if_exists
from dbplane.platform.manifests import companion_statefulset_manifest, headless_service_manifest
from dbplane.platform.naming import (
    QDRANT_GRPC_PORT,
    QDRANT_HTTP_PORT,
    cluster_local_host,
    companion_name_for,
    resource_name_for,
)
from dbplane.schema import CompanionAddress

logger = logging.getLogger(__name__)


class VectorCompanionManager:
    """Qdrant workload provisioned next to clusters that have vector search enabled"""

    def __init__(self, clients: KubeClients, image: str, storage_class: str):
        self.clients = clients
        self.image = image
        self.storage_class = storage_class

    def create_companion(self, namespace: str, cluster_id: str, plan: str) -> CompanionAddress:
        name = companion_name_for(cluster_id)
        resource_name = resource_name_for(cluster_id)
        create_or_skip(
            self.clients.apps.create_namespaced_stateful_set,
            f"vector companion {name}",
            namespace=namespace,
            body=companion_statefulset_manifest(name, resource_name, plan, self.image, self.storage_class),
        )
        create_or_skip(
            self.clients.core.create_namespaced_service,
            f"vector companion service {name}",
            namespace=namespace,
            body=headless_service_manifest(
                name,
                resource_name,
                {"app": name},
                [
                    {"name": "http", "port": QDRANT_HTTP_PORT, "targetPort": QDRANT_HTTP_PORT},
                    {"name": "grpc", "port": QDRANT_GRPC_PORT, "targetPort": QDRANT_GRPC_PORT},
                ],
            ),
        )
        return CompanionAddress(host=cluster_local_host(name, namespace), port=QDRANT_HTTP_PORT)

    def delete_companion(self, namespace: str, cluster_id: str):
        name = companion_name_for(cluster_id)
        delete_if_exists(
            self.clients.apps.delete_namespaced_stateful_set,
            f"vector companion {name}",
            name=name,
            namespace=namespace,
        )
        delete_if_exists(
            self.clients.core.delete_namespaced_service,
            f"vector companion service {name}",
            name=name,
            namespace=namespace,
        )

        claims = self.clients.core.list_namespaced_persistent_volume_claim(
            namespace=namespace, label_selector=f"app={name}"
        )
        for claim in claims.items or []:
            delete_if_exists(
                self.clients.core.delete_namespaced_persistent_volume_claim,
                f"vector companion volume {claim.metadata.name}",
                name=claim.metadata.name,
                namespace=namespace,
            )
