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

"""
Manifest builders for every object the control plane puts on the cluster.

All builders return plain dicts accepted by the kubernetes client as request
bodies, which keeps them easy to inspect in tests.
"""

import shlex
from typing import Dict, Iterable, List

from dbplane.platform.naming import (
    CLUSTER_LABEL,
    MANAGED_BY,
    MANAGED_BY_LABEL,
    MONGO_PORT,
    PLAN_LABEL,
    QDRANT_GRPC_PORT,
    QDRANT_HTTP_PORT,
    TENANT_LABEL,
    admin_secret_name,
    backup_claim_name,
    cluster_labels,
    external_service_name,
    network_policy_name,
)
from dbplane.planner import (
    CompanionResources,
    DeploymentStrategy,
    PlanResources,
    companion_resources_for,
    resources_for,
)

MONGODB_CRD_GROUP = "mongodbcommunity.mongodb.com"
MONGODB_CRD_VERSION = "v1"
MONGODB_CRD_PLURAL = "mongodbcommunity"
MONGODB_CRD_KIND = "MongoDBCommunity"

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"

SERVICE_ACCOUNT_NAME = "mongodb-database"
ROLE_NAME = "mongodb-role"
ROLE_BINDING_NAME = "mongodb-binding"

# Container names the resize patches address
OPERATOR_CONTAINER = "mongod"
SINGLE_MEMBER_CONTAINER = "mongodb"

ADMIN_ROLES = ["clusterAdmin", "userAdminAnyDatabase", "readWriteAnyDatabase", "dbAdminAnyDatabase"]
BACKUP_MOUNT = "/backup"


def resources_block(resources) -> Dict[str, Dict[str, str]]:
    """Requests and limits for either a PlanResources or a CompanionResources"""
    return {
        "requests": {"cpu": resources.cpu, "memory": resources.memory},
        "limits": {"cpu": resources.cpu_limit, "memory": resources.memory_limit},
    }


def pod_app_label(resource_name: str, strategy: DeploymentStrategy) -> str:
    # The operator labels its pods after the service it creates
    if strategy == DeploymentStrategy.REPLICA_SET:
        return f"{resource_name}-svc"
    return resource_name


def namespace_manifest(namespace: str, tenant_id: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": namespace,
            "labels": {MANAGED_BY_LABEL: MANAGED_BY, TENANT_LABEL: str(tenant_id).lower()},
        },
    }


def service_account_manifest(namespace: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {"name": SERVICE_ACCOUNT_NAME, "namespace": namespace},
    }


def role_manifest(namespace: str) -> dict:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": {"name": ROLE_NAME, "namespace": namespace},
        "rules": [
            {
                "apiGroups": [""],
                "resources": ["secrets", "pods", "services", "configmaps"],
                "verbs": ["get", "list", "watch", "create", "update", "patch"],
            }
        ],
    }


def role_binding_manifest(namespace: str) -> dict:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": {"name": ROLE_BINDING_NAME, "namespace": namespace},
        "subjects": [{"kind": "ServiceAccount", "name": SERVICE_ACCOUNT_NAME, "namespace": namespace}],
        "roleRef": {"kind": "Role", "name": ROLE_NAME, "apiGroup": "rbac.authorization.k8s.io"},
    }


def credentials_secret_manifest(name: str, resource_name: str, username: str, password: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "labels": cluster_labels(resource_name)},
        "type": "Opaque",
        "stringData": {"username": username, "password": password},
    }


def admin_secret_manifest(resource_name: str, username: str, password: str) -> dict:
    return credentials_secret_manifest(admin_secret_name(resource_name), resource_name, username, password)


def secret_env(name: str, secret: str, key: str) -> dict:
    return {"name": name, "valueFrom": {"secretKeyRef": {"name": secret, "key": key}}}


def operator_user_entry(resource_name: str, username: str, secret_name: str, roles: List[dict]) -> dict:
    return {
        "name": username,
        "db": "admin",
        "passwordSecretRef": {"name": secret_name},
        "roles": roles,
        "scramCredentialsSecretName": f"{secret_name}-scram",
    }


def replica_set_manifest(
    resource_name: str,
    plan: str,
    version: str,
    admin_username: str,
    storage_class: str,
) -> dict:
    resources: PlanResources = resources_for(plan)
    admin_roles = [{"name": role, "db": "admin"} for role in ADMIN_ROLES]
    return {
        "apiVersion": f"{MONGODB_CRD_GROUP}/{MONGODB_CRD_VERSION}",
        "kind": MONGODB_CRD_KIND,
        "metadata": {
            "name": resource_name,
            "labels": cluster_labels(resource_name, **{PLAN_LABEL: plan.upper()}),
        },
        "spec": {
            "members": resources.replicas,
            "type": "ReplicaSet",
            "version": version,
            "security": {"authentication": {"modes": ["SCRAM"]}},
            "users": [
                {
                    "name": admin_username,
                    "db": "admin",
                    "passwordSecretRef": {"name": admin_secret_name(resource_name)},
                    "roles": admin_roles,
                    "scramCredentialsSecretName": f"{resource_name}-scram",
                }
            ],
            "additionalMongodConfig": {
                "storage.wiredTiger.engineConfig.journalCompressor": "zlib",
                "net.maxIncomingConnections": 1000,
            },
            "statefulSet": {
                "spec": {
                    "template": {
                        "spec": {
                            "containers": [{"name": OPERATOR_CONTAINER, "resources": resources_block(resources)}]
                        }
                    },
                    "volumeClaimTemplates": [
                        _claim_template("data-volume", resources.storage, storage_class),
                        _claim_template("logs-volume", "1Gi", storage_class),
                    ],
                }
            },
        },
    }


def _claim_template(name: str, size: str, storage_class: str) -> dict:
    return {
        "metadata": {"name": name},
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "storageClassName": storage_class,
            "resources": {"requests": {"storage": size}},
        },
    }


def single_member_statefulset_manifest(resource_name: str, plan: str, image: str, storage_class: str) -> dict:
    resources: PlanResources = resources_for(plan)
    secret = admin_secret_name(resource_name)
    labels = {"app": resource_name}
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": resource_name,
            "labels": cluster_labels(resource_name, app=resource_name, **{PLAN_LABEL: plan.upper()}),
        },
        "spec": {
            "serviceName": resource_name,
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": dict(labels, **{CLUSTER_LABEL: resource_name})},
                "spec": {
                    "containers": [
                        {
                            "name": SINGLE_MEMBER_CONTAINER,
                            "image": image,
                            "ports": [{"containerPort": MONGO_PORT, "name": "mongodb"}],
                            "env": [
                                secret_env("MONGO_INITDB_ROOT_USERNAME", secret, "username"),
                                secret_env("MONGO_INITDB_ROOT_PASSWORD", secret, "password"),
                            ],
                            "resources": resources_block(resources),
                            "volumeMounts": [{"name": "data", "mountPath": "/data/db"}],
                        }
                    ]
                },
            },
            "volumeClaimTemplates": [_claim_template("data", resources.storage, storage_class)],
        },
    }


def headless_service_manifest(name: str, resource_name: str, selector: Dict[str, str], ports: List[dict]) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "labels": cluster_labels(resource_name, app=selector["app"])},
        "spec": {"clusterIP": "None", "selector": selector, "ports": ports},
    }


def network_policy_manifest(
    resource_name: str, namespace: str, strategy: DeploymentStrategy, allowed_cidrs: Iterable[str] = ()
) -> dict:
    """Ingress to the database port from the same namespace, plus optional CIDR allowlist rules"""
    port = [{"protocol": "TCP", "port": MONGO_PORT}]
    rules = [
        {
            "from": [{"namespaceSelector": {"matchLabels": {"kubernetes.io/metadata.name": namespace}}}],
            "ports": port,
        }
    ]
    for cidr in allowed_cidrs:
        rules.append({"from": [{"ipBlock": {"cidr": cidr}}], "ports": port})

    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {"name": network_policy_name(resource_name), "labels": cluster_labels(resource_name)},
        "spec": {
            "podSelector": {"matchLabels": {"app": pod_app_label(resource_name, strategy)}},
            "policyTypes": ["Ingress"],
            "ingress": rules,
        },
    }


def backup_claim_manifest(resource_name: str, size: str, storage_class: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": backup_claim_name(resource_name), "labels": cluster_labels(resource_name)},
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "storageClassName": storage_class,
            "resources": {"requests": {"storage": size}},
        },
    }


def external_service_manifest(resource_name: str, strategy: DeploymentStrategy) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": external_service_name(resource_name), "labels": cluster_labels(resource_name)},
        "spec": {
            "type": "NodePort",
            "selector": {"app": pod_app_label(resource_name, strategy)},
            "ports": [{"name": "mongodb", "protocol": "TCP", "port": MONGO_PORT, "targetPort": MONGO_PORT}],
        },
    }


def companion_statefulset_manifest(name: str, resource_name: str, plan: str, image: str, storage_class: str) -> dict:
    resources: CompanionResources = companion_resources_for(plan)
    labels = {"app": name}
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {"name": name, "labels": cluster_labels(resource_name, app=name)},
        "spec": {
            "serviceName": name,
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [
                        {
                            "name": "qdrant",
                            "image": image,
                            "ports": [
                                {"containerPort": QDRANT_HTTP_PORT, "name": "http"},
                                {"containerPort": QDRANT_GRPC_PORT, "name": "grpc"},
                            ],
                            "resources": resources_block(resources),
                            "volumeMounts": [{"name": "qdrant-storage", "mountPath": "/qdrant/storage"}],
                            "readinessProbe": {
                                "httpGet": {"path": "/readyz", "port": QDRANT_HTTP_PORT},
                                "initialDelaySeconds": 5,
                                "periodSeconds": 10,
                            },
                            "livenessProbe": {
                                "httpGet": {"path": "/livez", "port": QDRANT_HTTP_PORT},
                                "initialDelaySeconds": 15,
                                "periodSeconds": 20,
                            },
                        }
                    ]
                },
            },
            "volumeClaimTemplates": [
                {
                    "metadata": {"name": "qdrant-storage", "labels": labels},
                    "spec": {
                        "accessModes": ["ReadWriteOnce"],
                        "storageClassName": storage_class,
                        "resources": {"requests": {"storage": resources.storage}},
                    },
                }
            ],
        },
    }


def _mongo_tool_command(tool: str, service_host: str, archive: str, extra: List[str]) -> str:
    args = [
        tool,
        f"--host={service_host}",
        f"--port={MONGO_PORT}",
        '--username="$MONGO_ADMIN_USER"',
        '--password="$MONGO_ADMIN_PASSWORD"',
        "--authenticationDatabase=admin",
        f"--archive={archive}",
        "--gzip",
    ]
    return " ".join(args + extra)


def backup_command(service_host: str, backup_id: str) -> str:
    return _mongo_tool_command("mongodump", service_host, f"{BACKUP_MOUNT}/{backup_id}.gz", [])


def restore_command(
    service_host: str, backup_id: str, databases: Iterable[str] = (), collections: Iterable[str] = ()
) -> str:
    extra = ["--drop"]
    extra += [f"--nsInclude={shlex.quote(db + '.*')}" for db in databases]
    extra += [f"--nsInclude={shlex.quote(ns)}" for ns in collections]
    return _mongo_tool_command("mongorestore", service_host, f"{BACKUP_MOUNT}/{backup_id}.gz", extra)


def tool_job_manifest(name: str, resource_name: str, image: str, command: str, labels: Dict[str, str]) -> dict:
    """One-shot job running a database tool against the cluster with the backup claim mounted"""
    secret = admin_secret_name(resource_name)
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {"name": name, "labels": cluster_labels(resource_name, **labels)},
        "spec": {
            "backoffLimit": 2,
            "ttlSecondsAfterFinished": 3600,
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "restartPolicy": "Never",
                    "containers": [
                        {
                            "name": labels.get("job-type", "tool"),
                            "image": image,
                            "command": ["/bin/bash", "-c", command],
                            "env": [
                                secret_env("MONGO_ADMIN_USER", secret, "username"),
                                secret_env("MONGO_ADMIN_PASSWORD", secret, "password"),
                            ],
                            "volumeMounts": [{"name": "backup-storage", "mountPath": BACKUP_MOUNT}],
                        }
                    ],
                    "volumes": [
                        {
                            "name": "backup-storage",
                            "persistentVolumeClaim": {"claimName": backup_claim_name(resource_name)},
                        }
                    ],
                },
            },
        },
    }
