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

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    environment: str = Field("development", description="production selects the live platform")
    k8s_in_cluster: bool = Field(False, description="Load the in-cluster service account config")
    namespace_prefix: str = Field("dbplane-", description="Prefix of every tenant namespace")
    node_external_ip: Optional[str] = Field(None, description="Override for the node address of external endpoints")
    storage_class: str = "local-path"
    mongo_image: str = "mongo:7.0"
    mongo_version: str = "7.0.5"
    qdrant_image: str = "qdrant/qdrant:v1.13.2"
    backup_volume_size: str = "5Gi"
    simulation_delay: float = Field(2.0, description="Seconds a simulated mutation waits")

    credentials_encryption_key: str = "dev-only-change-me"
    database_url: str = "sqlite:///dbplane.db"
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"

    mongodb_dev_uri: Optional[str] = Field(None, description="Source database used instead of cluster addresses")
    qdrant_url: Optional[str] = Field(None, description="Vector store used instead of companion addresses")
    qdrant_timeout: int = 30

    pool_idle_seconds: int = 600
    pool_sweep_interval: int = 300
    pool_max_size: int = 5
    pool_min_size: int = 1

    watcher_queue_size: int = 1000
    watcher_scheduler: str = Field("local", description="local or celery; celery routes watchers to the watcher host")
    watcher_host: bool = Field(False, description="This process owns the change feed watchers")
    sync_batch_size: int = 100
    upsert_retry_attempts: int = 3

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def load_settings() -> Settings:
    return Settings(
        environment=os.environ.get("DBPLANE_ENV", "development"),
        k8s_in_cluster=_env_bool("K8S_IN_CLUSTER", False),
        namespace_prefix=os.environ.get("K8S_NAMESPACE_PREFIX", "dbplane-"),
        node_external_ip=os.environ.get("NODE_EXTERNAL_IP") or None,
        storage_class=os.environ.get("STORAGE_CLASS", "local-path"),
        mongo_image=os.environ.get("MONGO_IMAGE", "mongo:7.0"),
        mongo_version=os.environ.get("MONGO_VERSION", "7.0.5"),
        qdrant_image=os.environ.get("QDRANT_IMAGE", "qdrant/qdrant:v1.13.2"),
        backup_volume_size=os.environ.get("BACKUP_VOLUME_SIZE", "5Gi"),
        simulation_delay=float(os.environ.get("SIMULATION_DELAY_SECONDS", "2.0")),
        credentials_encryption_key=os.environ.get("CREDENTIALS_ENCRYPTION_KEY", "dev-only-change-me"),
        database_url=os.environ.get("DATABASE_URL", "sqlite:///dbplane.db"),
        celery_broker_url=os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        celery_result_backend=os.environ.get("CELERY_RESULT_BACKEND", "redis://localhost:6379/1"),
        mongodb_dev_uri=os.environ.get("MONGODB_DEV_URI") or None,
        qdrant_url=os.environ.get("QDRANT_URL") or None,
        qdrant_timeout=int(os.environ.get("QDRANT_TIMEOUT_SECONDS", "30")),
        pool_idle_seconds=int(os.environ.get("POOL_IDLE_SECONDS", "600")),
        pool_sweep_interval=int(os.environ.get("POOL_SWEEP_INTERVAL_SECONDS", "300")),
        watcher_queue_size=int(os.environ.get("WATCHER_QUEUE_SIZE", "1000")),
        watcher_scheduler=os.environ.get("WATCHER_SCHEDULER", "local"),
        watcher_host=_env_bool("WATCHER_HOST", False),
        sync_batch_size=int(os.environ.get("SYNC_BATCH_SIZE", "100")),
        upsert_retry_attempts=int(os.environ.get("UPSERT_RETRY_ATTEMPTS", "3")),
    )


settings = load_settings()
