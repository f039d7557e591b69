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

from dbplane.platform.kube import KubeClients, create_or_skip, delete_if_exists, read_or_none
from dbplane.platform.manifests import (
    namespace_manifest,
    role_binding_manifest,
    role_manifest,
    service_account_manifest,
)
from dbplane.platform.naming import namespace_for

logger = logging.getLogger(__name__)


class NamespaceManager:
    """One namespace per tenant, with the service account the database operator runs under"""

    def __init__(self, clients: KubeClients, prefix: str = None):
        self.clients = clients
        self.prefix = prefix

    def namespace_for(self, tenant_id: str) -> str:
        return namespace_for(tenant_id, self.prefix)

    def ensure_namespace(self, tenant_id: str) -> str:
        namespace = self.namespace_for(tenant_id)
        existing = read_or_none(self.clients.core.read_namespace, f"namespace {namespace}", name=namespace)
        if existing is not None:
            return namespace

        created = create_or_skip(
            self.clients.core.create_namespace,
            f"namespace {namespace}",
            body=namespace_manifest(namespace, tenant_id),
        )
        if created:
            self._provision_identity(namespace)
        return namespace

    def _provision_identity(self, namespace: str):
        create_or_skip(
            self.clients.core.create_namespaced_service_account,
            f"service account in {namespace}",
            namespace=namespace,
            body=service_account_manifest(namespace),
        )
        create_or_skip(
            self.clients.rbac.create_namespaced_role,
            f"role in {namespace}",
            namespace=namespace,
            body=role_manifest(namespace),
        )
        create_or_skip(
            self.clients.rbac.create_namespaced_role_binding,
            f"role binding in {namespace}",
            namespace=namespace,
            body=role_binding_manifest(namespace),
        )

    def delete_namespace(self, tenant_id: str) -> bool:
        namespace = self.namespace_for(tenant_id)
        return delete_if_exists(self.clients.core.delete_namespace, f"namespace {namespace}", name=namespace)
