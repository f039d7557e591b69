"""
Unit tests for manifest builders.

Test Coverage:
=============

1. Workloads:
   - Replica set custom object members, users and resources
   - Single-member StatefulSet shape and secret-sourced credentials

2. Networking:
   - Network policy selectors and CIDR rules
   - External NodePort service selectors per strategy

3. Jobs:
   - Backup and restore commands
   - Credentials only through secret references
"""

import json

from dbplane.planner import DeploymentStrategy, resources_for
from dbplane.platform.manifests import (
    MONGODB_CRD_KIND,
    admin_secret_manifest,
    backup_command,
    companion_statefulset_manifest,
    external_service_manifest,
    network_policy_manifest,
    replica_set_manifest,
    restore_command,
    single_member_statefulset_manifest,
    tool_job_manifest,
)


class TestWorkloadManifests:
    """Test suite for database workload manifests."""

    def test_replica_set_members_follow_plan(self):
        body = replica_set_manifest("mongo-c1", "LARGE", "7.0.5", "admin", "local-path")

        assert body["kind"] == MONGODB_CRD_KIND
        assert body["spec"]["members"] == 3
        assert body["spec"]["type"] == "ReplicaSet"
        assert body["spec"]["version"] == "7.0.5"
        assert body["metadata"]["labels"]["dbplane.io/plan"] == "LARGE"

    def test_replica_set_admin_user_uses_secret(self):
        body = replica_set_manifest("mongo-c1", "LARGE", "7.0.5", "admin", "local-path")
        user = body["spec"]["users"][0]

        assert user["name"] == "admin"
        assert user["passwordSecretRef"] == {"name": "mongo-c1-admin-password"}
        assert {role["name"] for role in user["roles"]} == {
            "clusterAdmin",
            "userAdminAnyDatabase",
            "readWriteAnyDatabase",
            "dbAdminAnyDatabase",
        }

    def test_replica_set_resources_and_volumes(self):
        body = replica_set_manifest("mongo-c1", "XLARGE", "7.0.5", "admin", "fast")
        sts = body["spec"]["statefulSet"]["spec"]
        container = sts["template"]["spec"]["containers"][0]
        plan = resources_for("XLARGE")

        assert container["resources"]["requests"] == {"cpu": plan.cpu, "memory": plan.memory}
        assert container["resources"]["limits"] == {"cpu": plan.cpu_limit, "memory": plan.memory_limit}
        claims = {claim["metadata"]["name"]: claim for claim in sts["volumeClaimTemplates"]}
        assert claims["data-volume"]["spec"]["resources"]["requests"]["storage"] == plan.storage
        assert claims["data-volume"]["spec"]["storageClassName"] == "fast"
        assert "logs-volume" in claims

    def test_single_member_statefulset(self):
        body = single_member_statefulset_manifest("mongo-c2", "DEV", "mongo:7.0", "local-path")
        container = body["spec"]["template"]["spec"]["containers"][0]

        assert body["kind"] == "StatefulSet"
        assert body["spec"]["replicas"] == 1
        assert container["name"] == "mongodb"
        assert container["ports"][0]["containerPort"] == 27017
        env = {item["name"]: item["valueFrom"]["secretKeyRef"] for item in container["env"]}
        assert env["MONGO_INITDB_ROOT_PASSWORD"] == {"name": "mongo-c2-admin-password", "key": "password"}
        assert env["MONGO_INITDB_ROOT_USERNAME"]["key"] == "username"

    def test_admin_secret_carries_cluster_label(self):
        body = admin_secret_manifest("mongo-c1", "admin", "s3cret")
        assert body["metadata"]["labels"]["dbplane.io/cluster"] == "mongo-c1"
        assert body["stringData"] == {"username": "admin", "password": "s3cret"}

    def test_companion_probes_and_ports(self):
        body = companion_statefulset_manifest("qdrant-c1", "mongo-c1", "DEV", "qdrant/qdrant:v1.13.2", "local-path")
        container = body["spec"]["template"]["spec"]["containers"][0]

        assert [port["containerPort"] for port in container["ports"]] == [6333, 6334]
        assert container["readinessProbe"]["httpGet"]["path"] == "/readyz"
        assert container["livenessProbe"]["httpGet"]["path"] == "/livez"
        assert body["spec"]["volumeClaimTemplates"][0]["metadata"]["labels"] == {"app": "qdrant-c1"}


class TestNetworkManifests:
    """Test suite for network policy and external service manifests."""

    def test_policy_allows_same_namespace_only(self):
        body = network_policy_manifest("mongo-c1", "dbplane-t1", DeploymentStrategy.SINGLE_MEMBER)
        rules = body["spec"]["ingress"]

        assert body["spec"]["podSelector"] == {"matchLabels": {"app": "mongo-c1"}}
        assert len(rules) == 1
        assert rules[0]["from"][0]["namespaceSelector"]["matchLabels"] == {
            "kubernetes.io/metadata.name": "dbplane-t1"
        }
        assert rules[0]["ports"] == [{"protocol": "TCP", "port": 27017}]

    def test_policy_adds_cidr_rules(self):
        body = network_policy_manifest(
            "mongo-c1", "dbplane-t1", DeploymentStrategy.REPLICA_SET, ["10.0.0.0/8", "192.168.1.0/24"]
        )
        rules = body["spec"]["ingress"]

        assert body["spec"]["podSelector"] == {"matchLabels": {"app": "mongo-c1-svc"}}
        assert [rule["from"][0]["ipBlock"]["cidr"] for rule in rules[1:]] == ["10.0.0.0/8", "192.168.1.0/24"]

    def test_external_service_selector_per_strategy(self):
        replica = external_service_manifest("mongo-c1", DeploymentStrategy.REPLICA_SET)
        single = external_service_manifest("mongo-c1", DeploymentStrategy.SINGLE_MEMBER)

        assert replica["spec"]["type"] == "NodePort"
        assert replica["metadata"]["name"] == "mongo-c1-external"
        assert replica["spec"]["selector"] == {"app": "mongo-c1-svc"}
        assert single["spec"]["selector"] == {"app": "mongo-c1"}
        assert single["spec"]["ports"][0]["name"] == "mongodb"


class TestJobManifests:
    """Test suite for backup and restore jobs."""

    def test_backup_command(self):
        command = backup_command("mongo-c1-svc", "bk1")
        assert command.startswith("mongodump --host=mongo-c1-svc --port=27017")
        assert "--archive=/backup/bk1.gz --gzip" in command
        assert '--password="$MONGO_ADMIN_PASSWORD"' in command

    def test_restore_command_filters(self):
        command = restore_command("mongo-c1", "bk1", databases=["shop"], collections=["crm.users"])
        assert command.startswith("mongorestore ")
        assert "--drop" in command
        assert "--nsInclude=shop.*" in command or "--nsInclude='shop.*'" in command
        assert "--nsInclude=crm.users" in command

    def test_job_credentials_only_via_secret_refs(self):
        body = tool_job_manifest("backup-bk1", "mongo-c1", "mongo:7.0", "mongodump", {"job-type": "backup"})
        spec = body["spec"]
        container = spec["template"]["spec"]["containers"][0]

        assert spec["backoffLimit"] == 2
        assert spec["ttlSecondsAfterFinished"] == 3600
        assert spec["template"]["spec"]["restartPolicy"] == "Never"
        assert all("valueFrom" in item and "value" not in item for item in container["env"])
        assert spec["template"]["spec"]["volumes"][0]["persistentVolumeClaim"]["claimName"] == "mongo-c1-backups"
        assert "s3cret" not in json.dumps(body)
