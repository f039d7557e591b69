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
from typing import Optional

from kubernetes.client.rest import ApiException

from dbplane.planner import DeploymentStrategy
from dbplane.platform.kube import KubeClients, check_permission, create_or_skip
from dbplane.platform.manifests import external_service_manifest
from dbplane.platform.naming import external_service_name
from dbplane.schema import ExternalEndpoint

logger = logging.getLogger(__name__)


class ExternalConnectivityResolver:
    """Exposes clusters through a NodePort service and works out the address clients dial"""

    def __init__(self, clients: KubeClients, node_external_ip: Optional[str] = None):
        self.clients = clients
        self.node_external_ip = node_external_ip

    def create_external_service(self, namespace: str, resource_name: str, strategy: DeploymentStrategy) -> str:
        name = external_service_name(resource_name)
        create_or_skip(
            self.clients.core.create_namespaced_service,
            f"external service {name}",
            namespace=namespace,
            body=external_service_manifest(resource_name, strategy),
        )
        return name

    def get_external_endpoint(self, namespace: str, service_name: str) -> Optional[ExternalEndpoint]:
        """
        Resolve the externally reachable address of a NodePort service.

        Returns None while the node port is unassigned or no node address is
        known yet; the caller retries later. Permission errors still raise.
        """
        try:
            service = self.clients.core.read_namespaced_service(name=service_name, namespace=namespace)
        except ApiException as e:
            check_permission(e, f"read external service {namespace}/{service_name}")
            logger.warning(f"Could not read external service {namespace}/{service_name}: {e.status} {e.reason}")
            return None

        ports = (service.spec.ports or []) if service.spec else []
        node_port = ports[0].node_port if ports else None
        if not node_port:
            logger.info(f"Node port for {namespace}/{service_name} is not assigned yet")
            return None

        host = self.resolve_node_address()
        if not host:
            return None
        return ExternalEndpoint(host=host, port=node_port)

    def resolve_node_address(self) -> Optional[str]:
        if self.node_external_ip:
            return self.node_external_ip

        try:
            nodes = self.clients.core.list_node().items or []
        except ApiException as e:
            check_permission(e, "list nodes")
            logger.warning(f"Could not list nodes: {e.status} {e.reason}")
            return None

        for address_type in ("ExternalIP", "InternalIP"):
            for node in nodes:
                for address in (node.status.addresses or []) if node.status else []:
                    if address.type == address_type and address.address:
                        return address.address

        logger.warning("No node reports an ExternalIP or InternalIP address")
        return None
