"""
Unit tests for the cluster and vector index record store.

Test Coverage:
=============

1. Clusters:
   - save and reload keep every field and timezone-aware timestamps
   - status updates bump gmt_updated
   - status filters and deletion

2. Vector indexes:
   - JSON field lists survive a reload
   - stats updates, including a record that disappeared
"""

from dbplane.db.models import Cluster, ClusterStatus, VectorIndex, VectorIndexStatus, utc_now


class TestClusterRecords:
    def test_default_timestamps_are_timezone_aware(self):
        cluster = Cluster(tenant_id="t1", name="orders", plan="DEV")

        assert cluster.gmt_created.tzinfo is not None
        assert cluster.gmt_updated.utcoffset().total_seconds() == 0

    def test_save_and_reload(self, records):
        cluster = Cluster(tenant_id="t1", name="orders", plan="MEDIUM", target_members=1, host="mongo-x-svc")

        saved = records.save_cluster(cluster)
        loaded = records.query_cluster(saved.id)

        assert loaded is not None
        assert loaded.id.startswith("cls")
        assert loaded.status == ClusterStatus.CREATING
        assert loaded.plan == "MEDIUM"
        assert loaded.target_members == 1
        assert loaded.host == "mongo-x-svc"
        assert loaded.gmt_created is not None
        assert loaded.gmt_updated.replace(tzinfo=None) >= loaded.gmt_created.replace(tzinfo=None)

    def test_update_status_bumps_gmt_updated(self, records, make_cluster):
        cluster = make_cluster(status=ClusterStatus.CREATING)
        before = cluster.gmt_updated

        updated = records.update_cluster_status(cluster.id, ClusterStatus.FAILED, "operator unavailable")

        assert updated.status == ClusterStatus.FAILED
        assert updated.status_message == "operator unavailable"
        assert updated.gmt_updated.replace(tzinfo=None) >= before.replace(tzinfo=None)

    def test_update_status_of_unknown_cluster(self, records):
        assert records.update_cluster_status("cls-missing", ClusterStatus.READY) is None

    def test_query_by_status_and_delete(self, records, make_cluster):
        ready = make_cluster(status=ClusterStatus.READY)
        make_cluster(status=ClusterStatus.PAUSED, name="archive")

        assert [c.id for c in records.query_clusters([ClusterStatus.READY])] == [ready.id]
        assert records.delete_cluster(ready.id) is True
        assert records.delete_cluster(ready.id) is False
        assert records.query_cluster(ready.id) is None


class TestVectorIndexRecords:
    def _index(self, records, cluster_id):
        return records.save_vector_index(
            VectorIndex(
                cluster_id=cluster_id,
                name="by_embedding",
                database="shop",
                collection="items",
                vector_fields=[{"path": "embedding", "dimensions": 3, "similarity": "cosine"}],
                filter_fields=[{"path": "category", "type": "string"}],
                text_fields=["title"],
            )
        )

    def test_save_and_reload_json_fields(self, records, make_cluster):
        index = self._index(records, make_cluster().id)

        loaded = records.query_vector_index(index.id)

        assert loaded.status == VectorIndexStatus.PENDING
        assert loaded.vector_fields[0]["path"] == "embedding"
        assert loaded.filter_fields == [{"path": "category", "type": "string"}]
        assert loaded.text_fields == ["title"]
        assert loaded.primary_vector_field().dimensions == 3

    def test_build_timestamps_persist(self, records, make_cluster):
        index = self._index(records, make_cluster().id)
        index.build_started_at = utc_now()

        records.save_vector_index(index)

        assert records.query_vector_index(index.id).build_started_at is not None

    def test_update_stats(self, records, make_cluster):
        index = self._index(records, make_cluster().id)

        updated = records.update_vector_index_stats(index.id, 10, 120)

        assert (updated.document_count, updated.index_size_bytes) == (10, 120)
        assert records.update_vector_index_stats("vdx-missing", 1, 1) is None
