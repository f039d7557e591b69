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

import random
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from dbplane.planner import DeploymentStrategy, strategy_for
from dbplane.schema import FilterFieldSpec, VectorFieldSpec


def random_id():
    """Generate a random ID string"""
    return "".join(random.sample(uuid.uuid4().hex, 16))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClusterStatus(str, Enum):
    CREATING = "creating"
    READY = "ready"
    UPDATING = "updating"
    DEGRADED = "degraded"
    PAUSING = "pausing"
    PAUSED = "paused"
    RESUMING = "resuming"
    DELETING = "deleting"
    FAILED = "failed"


class VectorIndexStatus(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"
    DELETING = "deleting"


class Cluster(SQLModel, table=True):
    __tablename__ = "cluster"

    id: str = Field(default_factory=lambda: "cls" + random_id(), primary_key=True, max_length=24)
    tenant_id: str = Field(max_length=256, index=True)
    name: str = Field(max_length=256)
    plan: str = Field(max_length=32)
    mongo_version: Optional[str] = None
    status: ClusterStatus = ClusterStatus.CREATING
    status_message: Optional[str] = None
    vector_search_enabled: bool = False

    host: Optional[str] = None
    port: Optional[int] = None
    replica_set: Optional[str] = None
    srv_host: Optional[str] = None
    external_host: Optional[str] = None
    external_port: Optional[int] = None
    vector_db_host: Optional[str] = None
    vector_db_port: Optional[int] = None

    credentials_ref: Optional[str] = None
    # Member count restored by resume; tracks the last successful create/resize
    target_members: Optional[int] = None

    gmt_created: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    gmt_updated: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    @property
    def strategy(self) -> DeploymentStrategy:
        return strategy_for(self.plan)


class VectorIndex(SQLModel, table=True):
    __tablename__ = "vector_index"

    id: str = Field(default_factory=lambda: "vdx" + random_id(), primary_key=True, max_length=24)
    cluster_id: str = Field(max_length=24, index=True)
    name: str = Field(max_length=128)
    database: str = Field(max_length=256)
    collection: str = Field(max_length=256)
    vector_fields: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    filter_fields: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    text_fields: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    status: VectorIndexStatus = VectorIndexStatus.PENDING
    error_message: Optional[str] = None
    document_count: int = 0
    index_size_bytes: int = 0
    build_started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    build_completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    gmt_created: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    gmt_updated: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    def get_vector_fields(self) -> List[VectorFieldSpec]:
        return [VectorFieldSpec.model_validate(field) for field in self.vector_fields or []]

    def get_filter_fields(self) -> List[FilterFieldSpec]:
        return [FilterFieldSpec.model_validate(field) for field in self.filter_fields or []]

    def primary_vector_field(self) -> VectorFieldSpec:
        fields = self.get_vector_fields()
        if not fields:
            raise ValueError(f"Vector index {self.id} has no vector fields")
        return fields[0]
