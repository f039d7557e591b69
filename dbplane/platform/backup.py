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

from dbplane.planner import service_name_for
from dbplane.platform.kube import KubeClients, create_or_skip
from dbplane.platform.manifests import backup_claim_manifest, backup_command, restore_command, tool_job_manifest
from dbplane.platform.naming import backup_claim_name, job_name, namespace_for, resource_name_for
from dbplane.schema import BackupSpec, RestoreSpec

logger = logging.getLogger(__name__)


class BackupJobDispatcher:
    """
    Fire-and-forget backup and restore jobs.

    The control plane only submits the job; completion is observed through the
    job itself, which cleans up an hour after it finishes.
    """

    def __init__(self, clients: KubeClients, image: str, storage_class: str, volume_size: str = "5Gi", prefix=None):
        self.clients = clients
        self.image = image
        self.storage_class = storage_class
        self.volume_size = volume_size
        self.prefix = prefix

    def ensure_backup_volume(self, namespace: str, resource_name: str) -> str:
        name = backup_claim_name(resource_name)
        create_or_skip(
            self.clients.core.create_namespaced_persistent_volume_claim,
            f"backup volume {name}",
            namespace=namespace,
            body=backup_claim_manifest(resource_name, self.volume_size, self.storage_class),
        )
        return name

    def create_backup(self, spec: BackupSpec) -> str:
        namespace = namespace_for(spec.tenant_id, self.prefix)
        resource_name = resource_name_for(spec.cluster_id)
        self.ensure_backup_volume(namespace, resource_name)
        name = job_name("backup", spec.backup_id)
        command = backup_command(service_name_for(resource_name, spec.plan), spec.backup_id)
        body = tool_job_manifest(
            name, resource_name, self.image, command, {"job-type": "backup", "backup-id": spec.backup_id}
        )
        create_or_skip(self.clients.batch.create_namespaced_job, f"backup job {name}", namespace=namespace, body=body)
        return name

    def restore_backup(self, spec: RestoreSpec) -> str:
        namespace = namespace_for(spec.tenant_id, self.prefix)
        resource_name = resource_name_for(spec.cluster_id)
        name = job_name("restore", spec.restore_id)
        command = restore_command(
            service_name_for(resource_name, spec.plan), spec.backup_id, spec.databases, spec.collections
        )
        body = tool_job_manifest(
            name, resource_name, self.image, command, {"job-type": "restore", "backup-id": spec.backup_id}
        )
        create_or_skip(self.clients.batch.create_namespaced_job, f"restore job {name}", namespace=namespace, body=body)
        return name
