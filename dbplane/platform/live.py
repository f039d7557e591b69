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

import json
import logging
import shlex
from typing import Iterable, List, Optional

from kubernetes.client.rest import ApiException
from kubernetes.utils import parse_quantity

from dbplane.config import Settings
from dbplane.exceptions import DBPlaneException
from dbplane.planner import DeploymentStrategy, resources_for, service_name_for, strategy_for
from dbplane.platform.backup import BackupJobDispatcher
from dbplane.platform.base import ClusterPlatform
from dbplane.platform.companion import VectorCompanionManager
from dbplane.platform.connectivity import ExternalConnectivityResolver
from dbplane.platform.exec import KubePodExecutor, PodExecutor
from dbplane.platform.kube import (
    KubeClients,
    check_permission,
    create_or_skip,
    delete_if_exists,
    surface_permission_errors,
)
from dbplane.platform.manifests import (
    METRICS_GROUP,
    METRICS_VERSION,
    MONGODB_CRD_GROUP,
    MONGODB_CRD_PLURAL,
    MONGODB_CRD_VERSION,
    OPERATOR_CONTAINER,
    SINGLE_MEMBER_CONTAINER,
    admin_secret_manifest,
    credentials_secret_manifest,
    headless_service_manifest,
    network_policy_manifest,
    operator_user_entry,
    replica_set_manifest,
    resources_block,
    single_member_statefulset_manifest,
)
from dbplane.platform.namespace import NamespaceManager
from dbplane.platform.naming import (
    CLUSTER_LABEL,
    MONGO_PORT,
    PLAN_LABEL,
    cluster_local_host,
    external_service_name,
    network_policy_name,
    resource_name_for,
    user_secret_name,
)
from dbplane.schema import (
    BackupSpec,
    ClusterMetrics,
    ClusterRef,
    ClusterSpec,
    CompanionAddress,
    ConnectionInfo,
    DatabaseUserSpec,
    ExternalEndpoint,
    ResizeSpec,
    RestoreSpec,
    WorkloadPhase,
    WorkloadStatus,
)

logger = logging.getLogger(__name__)


class LivePlatform(ClusterPlatform):
    """Drives MongoDB clusters on a real Kubernetes API server"""

    def __init__(self, clients: KubeClients, settings: Settings, executor: PodExecutor = None):
        self.clients = clients
        self.settings = settings
        self.namespaces = NamespaceManager(clients, settings.namespace_prefix)
        self.connectivity = ExternalConnectivityResolver(clients, settings.node_external_ip)
        self.backups = BackupJobDispatcher(
            clients,
            settings.mongo_image,
            settings.storage_class,
            settings.backup_volume_size,
            settings.namespace_prefix,
        )
        self.companions = VectorCompanionManager(clients, settings.qdrant_image, settings.storage_class)
        self.executor = executor or KubePodExecutor(clients, container=SINGLE_MEMBER_CONTAINER)

    def _locate(self, cluster_id: str, tenant_id: str):
        return self.namespaces.namespace_for(tenant_id), resource_name_for(cluster_id)

    def _custom_object_kwargs(self, namespace: str, name: str = None) -> dict:
        kwargs = dict(
            group=MONGODB_CRD_GROUP, version=MONGODB_CRD_VERSION, namespace=namespace, plural=MONGODB_CRD_PLURAL
        )
        if name:
            kwargs["name"] = name
        return kwargs

    # Namespace
    def ensure_namespace(self, tenant_id: str) -> str:
        return self.namespaces.ensure_namespace(tenant_id)

    def delete_namespace(self, tenant_id: str) -> bool:
        return self.namespaces.delete_namespace(tenant_id)

    # Create
    @surface_permission_errors("create cluster")
    def create_cluster(self, spec: ClusterSpec) -> ConnectionInfo:
        namespace = self.namespaces.ensure_namespace(spec.tenant_id)
        resource_name = resource_name_for(spec.cluster_id)
        strategy = strategy_for(spec.plan)
        logger.info(f"Creating cluster {resource_name} in {namespace} with plan {spec.plan} ({strategy.value})")

        self._apply_secret(namespace, admin_secret_manifest(resource_name, spec.username, spec.password))

        if strategy == DeploymentStrategy.REPLICA_SET:
            create_or_skip(
                self.clients.custom.create_namespaced_custom_object,
                f"replica set {resource_name}",
                body=replica_set_manifest(
                    resource_name,
                    spec.plan,
                    spec.mongo_version or self.settings.mongo_version,
                    spec.username,
                    self.settings.storage_class,
                ),
                **self._custom_object_kwargs(namespace),
            )
        else:
            create_or_skip(
                self.clients.apps.create_namespaced_stateful_set,
                f"statefulset {resource_name}",
                namespace=namespace,
                body=single_member_statefulset_manifest(
                    resource_name, spec.plan, self.settings.mongo_image, self.settings.storage_class
                ),
            )
            create_or_skip(
                self.clients.core.create_namespaced_service,
                f"service {resource_name}",
                namespace=namespace,
                body=headless_service_manifest(
                    resource_name,
                    resource_name,
                    {"app": resource_name},
                    [{"name": "mongodb", "port": MONGO_PORT, "targetPort": MONGO_PORT}],
                ),
            )

        create_or_skip(
            self.clients.networking.create_namespaced_network_policy,
            f"network policy for {resource_name}",
            namespace=namespace,
            body=network_policy_manifest(resource_name, namespace, strategy),
        )
        self.backups.ensure_backup_volume(namespace, resource_name)

        companion = None
        if spec.vector_search_enabled:
            companion = self.companions.create_companion(namespace, spec.cluster_id, spec.plan)

        self.connectivity.create_external_service(namespace, resource_name, strategy)
        endpoint = self.connectivity.get_external_endpoint(namespace, external_service_name(resource_name))
        if endpoint is None:
            logger.info(f"External endpoint for {resource_name} not available yet")

        return self._connection_info(namespace, resource_name, spec.plan, endpoint, companion)

    def _connection_info(
        self,
        namespace: str,
        resource_name: str,
        plan: str,
        endpoint: Optional[ExternalEndpoint],
        companion: Optional[CompanionAddress],
    ) -> ConnectionInfo:
        host = cluster_local_host(service_name_for(resource_name, plan), namespace)
        info = ConnectionInfo(host=host, port=MONGO_PORT)
        if strategy_for(plan) == DeploymentStrategy.REPLICA_SET:
            info.replica_set = resource_name
            info.srv_host = host
        if endpoint:
            info.external_host = endpoint.host
            info.external_port = endpoint.port
        if companion:
            info.vector_db_host = companion.host
            info.vector_db_port = companion.port
        return info

    def _apply_secret(self, namespace: str, body: dict):
        name = body["metadata"]["name"]
        try:
            self.clients.core.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            create_or_skip(self.clients.core.create_namespaced_secret, f"secret {name}", namespace=namespace, body=body)
            return
        self.clients.core.replace_namespaced_secret(name=name, namespace=namespace, body=body)
        logger.info(f"Replaced secret {name}")

    # Resize
    @surface_permission_errors("resize cluster")
    def _resize_cluster(self, spec: ResizeSpec) -> None:
        namespace, resource_name = self._locate(spec.cluster_id, spec.tenant_id)
        resources = resources_for(spec.new_plan)
        logger.info(f"Resizing cluster {resource_name} from {spec.current_plan} to {spec.new_plan}")

        if strategy_for(spec.new_plan) == DeploymentStrategy.REPLICA_SET:
            kwargs = self._custom_object_kwargs(namespace, resource_name)
            body = self.clients.custom.get_namespaced_custom_object(**kwargs)
            body.setdefault("metadata", {}).setdefault("labels", {})[PLAN_LABEL] = spec.new_plan.upper()
            body["spec"]["members"] = resources.replicas
            containers = (
                body["spec"]
                .setdefault("statefulSet", {})
                .setdefault("spec", {})
                .setdefault("template", {})
                .setdefault("spec", {})
                .setdefault("containers", [])
            )
            container = next((c for c in containers if c.get("name") == OPERATOR_CONTAINER), None)
            if container is None:
                container = {"name": OPERATOR_CONTAINER}
                containers.append(container)
            container["resources"] = resources_block(resources)
            self.clients.custom.replace_namespaced_custom_object(body=body, **kwargs)
        else:
            patch = {
                "metadata": {"labels": {PLAN_LABEL: spec.new_plan.upper()}},
                "spec": {
                    "template": {
                        "spec": {
                            "containers": [{"name": SINGLE_MEMBER_CONTAINER, "resources": resources_block(resources)}]
                        }
                    }
                },
            }
            self.clients.apps.patch_namespaced_stateful_set(name=resource_name, namespace=namespace, body=patch)
        logger.info(f"Resized cluster {resource_name} to {spec.new_plan}")

    # Pause / resume
    def _scale(self, ref: ClusterRef, members: int):
        namespace, resource_name = self._locate(ref.cluster_id, ref.tenant_id)
        if strategy_for(ref.plan) == DeploymentStrategy.REPLICA_SET:
            self.clients.custom.patch_namespaced_custom_object(
                body={"spec": {"members": members}}, **self._custom_object_kwargs(namespace, resource_name)
            )
        else:
            self.clients.apps.patch_namespaced_stateful_set_scale(
                name=resource_name, namespace=namespace, body={"spec": {"replicas": members}}
            )
        logger.info(f"Scaled cluster {resource_name} to {members} members")

    @surface_permission_errors("pause cluster")
    def pause_cluster(self, ref: ClusterRef) -> None:
        self._scale(ref, 0)

    @surface_permission_errors("resume cluster")
    def resume_cluster(self, ref: ClusterRef, members: Optional[int] = None) -> None:
        if strategy_for(ref.plan) == DeploymentStrategy.SINGLE_MEMBER:
            members = 1
        self._scale(ref, members or resources_for(ref.plan).replicas)

    # Delete
    @surface_permission_errors("delete cluster")
    def delete_cluster(self, ref: ClusterRef) -> None:
        namespace, resource_name = self._locate(ref.cluster_id, ref.tenant_id)
        logger.info(f"Deleting cluster {resource_name} in {namespace}")

        steps = [
            lambda: delete_if_exists(
                self.clients.custom.delete_namespaced_custom_object,
                f"replica set {resource_name}",
                **self._custom_object_kwargs(namespace, resource_name),
            ),
            lambda: delete_if_exists(
                self.clients.apps.delete_namespaced_stateful_set,
                f"statefulset {resource_name}",
                name=resource_name,
                namespace=namespace,
            ),
            lambda: delete_if_exists(
                self.clients.core.delete_namespaced_service,
                f"service {resource_name}",
                name=resource_name,
                namespace=namespace,
            ),
            lambda: self._delete_cluster_secrets(namespace, resource_name),
            lambda: delete_if_exists(
                self.clients.networking.delete_namespaced_network_policy,
                f"network policy for {resource_name}",
                name=network_policy_name(resource_name),
                namespace=namespace,
            ),
            lambda: self.companions.delete_companion(namespace, ref.cluster_id),
            lambda: delete_if_exists(
                self.clients.core.delete_namespaced_service,
                f"external service for {resource_name}",
                name=external_service_name(resource_name),
                namespace=namespace,
            ),
        ]

        # Keep going after a failed step so one stuck object does not leave the rest behind
        errors = []
        for step in steps:
            try:
                step()
            except ApiException as e:
                check_permission(e, f"delete cluster {resource_name}")
                logger.warning(f"Delete step for {resource_name} failed: {e.status} {e.reason}")
                errors.append(e)
        if errors:
            message = f"Failed to delete {len(errors)} object(s) of cluster {resource_name}"
            raise DBPlaneException(message) from errors[0]

    def _delete_cluster_secrets(self, namespace: str, resource_name: str):
        secrets = self.clients.core.list_namespaced_secret(
            namespace=namespace, label_selector=f"{CLUSTER_LABEL}={resource_name}"
        )
        for secret in secrets.items or []:
            delete_if_exists(
                self.clients.core.delete_namespaced_secret,
                f"secret {secret.metadata.name}",
                name=secret.metadata.name,
                namespace=namespace,
            )

    # Status
    def get_cluster_status(self, ref: ClusterRef) -> WorkloadStatus:
        namespace, resource_name = self._locate(ref.cluster_id, ref.tenant_id)
        statuses = []

        try:
            body = self.clients.custom.get_namespaced_custom_object(
                **self._custom_object_kwargs(namespace, resource_name)
            )
            return self._status_from_custom_object(body)
        except ApiException as e:
            statuses.append(e.status)
        except Exception as e:
            logger.warning(f"Could not read replica set {resource_name}: {e}")
            statuses.append(None)

        try:
            statefulset = self.clients.apps.read_namespaced_stateful_set(name=resource_name, namespace=namespace)
            return self._status_from_statefulset(statefulset)
        except ApiException as e:
            statuses.append(e.status)
        except Exception as e:
            logger.warning(f"Could not read statefulset {resource_name}: {e}")
            statuses.append(None)

        if all(status == 404 for status in statuses):
            return WorkloadStatus(phase=WorkloadPhase.NOT_FOUND.value, ready=False, message="Cluster not found")
        logger.warning(f"Status of {resource_name} is unknown, API responses: {statuses}")
        return WorkloadStatus(phase=WorkloadPhase.UNKNOWN.value, ready=False, message="Status unavailable")

    @staticmethod
    def _status_from_custom_object(body: dict) -> WorkloadStatus:
        status = body.get("status") or {}
        phase = (status.get("phase") or WorkloadPhase.UNKNOWN.value).lower()
        return WorkloadStatus(
            phase=phase,
            ready=phase == WorkloadPhase.RUNNING.value,
            replicas=(body.get("spec") or {}).get("members", 0),
            ready_replicas=status.get("currentStatefulSetReplicas", 0) or 0,
            message=status.get("message"),
        )

    @staticmethod
    def _status_from_statefulset(statefulset) -> WorkloadStatus:
        desired = (statefulset.spec.replicas if statefulset.spec else 0) or 0
        ready_replicas = (statefulset.status.ready_replicas if statefulset.status else 0) or 0
        ready = desired > 0 and ready_replicas >= desired
        if ready:
            phase = WorkloadPhase.RUNNING
        elif ready_replicas > 0:
            phase = WorkloadPhase.PENDING
        else:
            phase = WorkloadPhase.CREATING
        return WorkloadStatus(
            phase=phase.value,
            ready=ready,
            replicas=desired,
            ready_replicas=ready_replicas,
            message=f"{ready_replicas}/{desired} pods ready",
        )

    def get_cluster_metrics(self, ref: ClusterRef) -> ClusterMetrics:
        """Sum container usage from the metrics API over the cluster's pods"""
        namespace, resource_name = self._locate(ref.cluster_id, ref.tenant_id)
        try:
            body = self.clients.custom.list_namespaced_custom_object(
                group=METRICS_GROUP, version=METRICS_VERSION, namespace=namespace, plural="pods"
            )
        except ApiException as e:
            check_permission(e, f"read metrics of {resource_name}")
            logger.warning(f"Could not read metrics of {resource_name}: {e.status} {e.reason}")
            return ClusterMetrics()

        cores = 0.0
        memory_bytes = 0.0
        for pod in body.get("items") or []:
            # Pods of the companion and of tool jobs carry other names
            if not (pod.get("metadata") or {}).get("name", "").startswith(f"{resource_name}-"):
                continue
            for container in pod.get("containers") or []:
                usage = container.get("usage") or {}
                cores += float(parse_quantity(usage.get("cpu", "0")))
                memory_bytes += float(parse_quantity(usage.get("memory", "0")))

        return ClusterMetrics(cpu_percent=cores * 100, memory_mib=memory_bytes / (1024 * 1024))

    # Connectivity
    @surface_permission_errors("enable external access")
    def enable_external_access(self, ref: ClusterRef) -> Optional[ExternalEndpoint]:
        namespace, resource_name = self._locate(ref.cluster_id, ref.tenant_id)
        name = self.connectivity.create_external_service(namespace, resource_name, strategy_for(ref.plan))
        return self.connectivity.get_external_endpoint(namespace, name)

    @surface_permission_errors("update network policy")
    def update_network_policy(self, ref: ClusterRef, allowed_cidrs: Iterable[str]) -> None:
        namespace, resource_name = self._locate(ref.cluster_id, ref.tenant_id)
        cidrs = list(allowed_cidrs)
        body = network_policy_manifest(resource_name, namespace, strategy_for(ref.plan), cidrs)
        name = network_policy_name(resource_name)
        try:
            self.clients.networking.replace_namespaced_network_policy(name=name, namespace=namespace, body=body)
            logger.info(f"Updated network policy {name} with {len(cidrs)} allowed CIDR(s)")
        except ApiException as e:
            if e.status != 404:
                raise
            create_or_skip(
                self.clients.networking.create_namespaced_network_policy,
                f"network policy {name}",
                namespace=namespace,
                body=body,
            )

    # Backups
    @surface_permission_errors("create backup")
    def create_backup(self, spec: BackupSpec) -> str:
        return self.backups.create_backup(spec)

    @surface_permission_errors("restore backup")
    def restore_backup(self, spec: RestoreSpec) -> str:
        return self.backups.restore_backup(spec)

    # Database users
    def _operator_users(self, namespace: str, resource_name: str):
        kwargs = self._custom_object_kwargs(namespace, resource_name)
        body = self.clients.custom.get_namespaced_custom_object(**kwargs)
        return body, body["spec"].setdefault("users", []), kwargs

    def _mongosh(self, namespace: str, resource_name: str, script: str) -> str:
        command = [
            "/bin/sh",
            "-c",
            'mongosh --quiet -u "$MONGO_INITDB_ROOT_USERNAME" -p "$MONGO_INITDB_ROOT_PASSWORD" '
            f"--authenticationDatabase admin --eval {shlex.quote(script)}",
        ]
        stdout, error = self.executor.exec(namespace, f"{resource_name}-0", command)
        if error:
            raise error
        return stdout

    @staticmethod
    def _role_docs(user: DatabaseUserSpec) -> List[dict]:
        return [{"role": role.role, "db": role.db} for role in user.roles]

    @surface_permission_errors("create database user")
    def create_database_user(self, ref: ClusterRef, user: DatabaseUserSpec) -> None:
        namespace, resource_name = self._locate(ref.cluster_id, ref.tenant_id)
        if strategy_for(ref.plan) == DeploymentStrategy.REPLICA_SET:
            secret_name = user_secret_name(resource_name, user.username)
            self._apply_secret(
                namespace, credentials_secret_manifest(secret_name, resource_name, user.username, user.password or "")
            )
            body, users, kwargs = self._operator_users(namespace, resource_name)
            users[:] = [entry for entry in users if entry.get("name") != user.username]
            roles = [{"name": role.role, "db": role.db} for role in user.roles]
            users.append(operator_user_entry(resource_name, user.username, secret_name, roles))
            self.clients.custom.replace_namespaced_custom_object(body=body, **kwargs)
        else:
            doc = {"user": user.username, "pwd": user.password or "", "roles": self._role_docs(user)}
            self._mongosh(namespace, resource_name, f"db.getSiblingDB('admin').createUser({json.dumps(doc)})")
        logger.info(f"Created database user {user.username} on {resource_name}")

    @surface_permission_errors("update database user")
    def update_database_user(self, ref: ClusterRef, user: DatabaseUserSpec) -> None:
        namespace, resource_name = self._locate(ref.cluster_id, ref.tenant_id)
        if strategy_for(ref.plan) == DeploymentStrategy.REPLICA_SET:
            secret_name = user_secret_name(resource_name, user.username)
            if user.password:
                self._apply_secret(
                    namespace, credentials_secret_manifest(secret_name, resource_name, user.username, user.password)
                )
            if user.roles:
                body, users, kwargs = self._operator_users(namespace, resource_name)
                for entry in users:
                    if entry.get("name") == user.username:
                        entry["roles"] = [{"name": role.role, "db": role.db} for role in user.roles]
                self.clients.custom.replace_namespaced_custom_object(body=body, **kwargs)
        else:
            admin = "db.getSiblingDB('admin')"
            if user.password:
                self._mongosh(
                    namespace,
                    resource_name,
                    f"{admin}.changeUserPassword({json.dumps(user.username)}, {json.dumps(user.password)})",
                )
            if user.roles:
                roles = json.dumps({"roles": self._role_docs(user)})
                self._mongosh(namespace, resource_name, f"{admin}.updateUser({json.dumps(user.username)}, {roles})")
        logger.info(f"Updated database user {user.username} on {resource_name}")

    @surface_permission_errors("delete database user")
    def delete_database_user(self, ref: ClusterRef, username: str) -> None:
        namespace, resource_name = self._locate(ref.cluster_id, ref.tenant_id)
        if strategy_for(ref.plan) == DeploymentStrategy.REPLICA_SET:
            body, users, kwargs = self._operator_users(namespace, resource_name)
            users[:] = [entry for entry in users if entry.get("name") != username]
            self.clients.custom.replace_namespaced_custom_object(body=body, **kwargs)
            delete_if_exists(
                self.clients.core.delete_namespaced_secret,
                f"secret for user {username}",
                name=user_secret_name(resource_name, username),
                namespace=namespace,
            )
        else:
            self._mongosh(namespace, resource_name, f"db.getSiblingDB('admin').dropUser({json.dumps(username)})")
        logger.info(f"Deleted database user {username} from {resource_name}")
