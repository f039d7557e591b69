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

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ClusterRef(BaseModel):
    cluster_id: str
    tenant_id: str
    plan: str


class ClusterSpec(ClusterRef):
    mongo_version: Optional[str] = None
    vector_search_enabled: bool = False
    username: str = Field(description="Admin user created on the database")
    password: str = Field(description="Only ever written into a platform secret")


class ResizeSpec(BaseModel):
    cluster_id: str
    tenant_id: str
    current_plan: str
    new_plan: str


class ExternalEndpoint(BaseModel):
    host: str
    port: int


class CompanionAddress(BaseModel):
    host: str
    port: int


class ConnectionInfo(BaseModel):
    host: str
    port: int
    replica_set: Optional[str] = None
    srv_host: Optional[str] = None
    external_host: Optional[str] = None
    external_port: Optional[int] = None
    vector_db_host: Optional[str] = None
    vector_db_port: Optional[int] = None


class WorkloadPhase(str, Enum):
    RUNNING = "running"
    PENDING = "pending"
    CREATING = "creating"
    NOT_FOUND = "not-found"
    UNKNOWN = "unknown"


class WorkloadStatus(BaseModel):
    phase: str
    ready: bool
    replicas: int = 0
    ready_replicas: int = 0
    message: Optional[str] = None


class ClusterMetrics(BaseModel):
    """Resource usage summed over the cluster's pods"""

    cpu_percent: float = 0.0
    memory_mib: float = 0.0
    storage_percent: float = 0.0
    connections: int = 0


class BackupSpec(BaseModel):
    backup_id: str
    cluster_id: str
    tenant_id: str
    plan: str


class RestoreSpec(BaseModel):
    restore_id: str
    backup_id: str
    cluster_id: str
    tenant_id: str
    plan: str
    databases: List[str] = Field(default_factory=list, description="Restore only these databases")
    collections: List[str] = Field(default_factory=list, description="Restore only these db.collection namespaces")


class UserRole(BaseModel):
    db: str = "admin"
    role: str


class DatabaseUserSpec(BaseModel):
    username: str
    password: Optional[str] = None
    roles: List[UserRole] = Field(default_factory=list)


class Similarity(str, Enum):
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    DOT_PRODUCT = "dotProduct"


class VectorFieldSpec(BaseModel):
    path: str
    dimensions: int = Field(gt=0)
    similarity: Similarity = Similarity.COSINE
    type: str = "float32"


class FilterFieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT_ID = "objectId"


class FilterFieldSpec(BaseModel):
    path: str
    type: FilterFieldType = FilterFieldType.STRING


class SyncResult(BaseModel):
    synced: int = 0
    errors: int = 0


class CollectionStats(BaseModel):
    point_count: int = 0
    index_size_bytes: int = 0
