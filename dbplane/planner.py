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
Plan to resource mapping and deployment strategy selection.

Every other module asks this one which strategy a plan uses; nobody else
branches on plan names.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from dbplane.exceptions import CrossStrategyResizeError, UnknownPlanError


class DeploymentStrategy(str, Enum):
    # Operator-managed MongoDBCommunity resource
    REPLICA_SET = "replica_set"
    # Plain StatefulSet with one member and a headless service
    SINGLE_MEMBER = "single_member"


@dataclass(frozen=True)
class PlanResources:
    cpu: str
    cpu_limit: str
    memory: str
    memory_limit: str
    storage: str
    replicas: int


@dataclass(frozen=True)
class CompanionResources:
    cpu: str
    cpu_limit: str
    memory: str
    memory_limit: str
    storage: str


# Tier order, smallest first
PLAN_TIERS: List[str] = [
    "DEV",
    "SMALL",
    "MEDIUM",
    "LARGE",
    "XLARGE",
    "XXL",
    "XXXL",
    "DEDICATED_L",
    "DEDICATED_XL",
]

PLAN_RESOURCES: Dict[str, PlanResources] = {
    "DEV": PlanResources(cpu="50m", cpu_limit="200m", memory="128Mi", memory_limit="256Mi", storage="1Gi", replicas=1),
    "SMALL": PlanResources(
        cpu="100m", cpu_limit="500m", memory="256Mi", memory_limit="512Mi", storage="5Gi", replicas=1
    ),
    "MEDIUM": PlanResources(
        cpu="150m", cpu_limit="750m", memory="512Mi", memory_limit="1Gi", storage="10Gi", replicas=1
    ),
    "LARGE": PlanResources(cpu="250m", cpu_limit="1000m", memory="1Gi", memory_limit="2Gi", storage="25Gi", replicas=3),
    "XLARGE": PlanResources(
        cpu="500m", cpu_limit="2000m", memory="2Gi", memory_limit="4Gi", storage="50Gi", replicas=3
    ),
    "XXL": PlanResources(cpu="1000m", cpu_limit="2000m", memory="4Gi", memory_limit="8Gi", storage="100Gi", replicas=3),
    "XXXL": PlanResources(
        cpu="2000m", cpu_limit="4000m", memory="8Gi", memory_limit="16Gi", storage="250Gi", replicas=3
    ),
    "DEDICATED_L": PlanResources(
        cpu="4000m", cpu_limit="8000m", memory="8Gi", memory_limit="16Gi", storage="250Gi", replicas=3
    ),
    "DEDICATED_XL": PlanResources(
        cpu="8000m", cpu_limit="16000m", memory="16Gi", memory_limit="32Gi", storage="500Gi", replicas=3
    ),
}

COMPANION_RESOURCES: Dict[str, CompanionResources] = {
    "DEV": CompanionResources(cpu="100m", cpu_limit="200m", memory="256Mi", memory_limit="512Mi", storage="1Gi"),
    "SMALL": CompanionResources(cpu="200m", cpu_limit="500m", memory="512Mi", memory_limit="1Gi", storage="5Gi"),
    "MEDIUM": CompanionResources(cpu="250m", cpu_limit="750m", memory="1Gi", memory_limit="2Gi", storage="10Gi"),
    "LARGE": CompanionResources(cpu="500m", cpu_limit="1000m", memory="2Gi", memory_limit="4Gi", storage="25Gi"),
    "XLARGE": CompanionResources(cpu="1000m", cpu_limit="2000m", memory="4Gi", memory_limit="8Gi", storage="50Gi"),
    "XXL": CompanionResources(cpu="1000m", cpu_limit="2000m", memory="4Gi", memory_limit="8Gi", storage="100Gi"),
    "XXXL": CompanionResources(cpu="2000m", cpu_limit="4000m", memory="8Gi", memory_limit="16Gi", storage="250Gi"),
    "DEDICATED_L": CompanionResources(
        cpu="4000m", cpu_limit="8000m", memory="16Gi", memory_limit="32Gi", storage="250Gi"
    ),
    "DEDICATED_XL": CompanionResources(
        cpu="8000m", cpu_limit="16000m", memory="32Gi", memory_limit="64Gi", storage="500Gi"
    ),
}

SINGLE_MEMBER_PLANS = frozenset({"DEV", "SMALL"})


def _normalize(plan: str) -> str:
    key = (plan or "").upper()
    if key not in PLAN_RESOURCES:
        raise UnknownPlanError(plan)
    return key


def resources_for(plan: str) -> PlanResources:
    return PLAN_RESOURCES[_normalize(plan)]


def companion_resources_for(plan: str) -> CompanionResources:
    return COMPANION_RESOURCES[_normalize(plan)]


def strategy_for(plan: str) -> DeploymentStrategy:
    if _normalize(plan) in SINGLE_MEMBER_PLANS:
        return DeploymentStrategy.SINGLE_MEMBER
    return DeploymentStrategy.REPLICA_SET


def is_replica_strategy(plan: str) -> bool:
    return strategy_for(plan) == DeploymentStrategy.REPLICA_SET


def service_name_for(resource_name: str, plan: str) -> str:
    """The operator names its service <resource>-svc, the plain workload uses the resource name"""
    if is_replica_strategy(plan):
        return f"{resource_name}-svc"
    return resource_name


def ensure_same_strategy(current_plan: str, target_plan: str) -> DeploymentStrategy:
    current = strategy_for(current_plan)
    if current != strategy_for(target_plan):
        raise CrossStrategyResizeError(current_plan, target_plan)
    return current
