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

from dbplane.config import Settings
from dbplane.platform.base import ClusterPlatform
from dbplane.platform.kube import load_kube_clients
from dbplane.platform.live import LivePlatform
from dbplane.platform.simulated import SimulatedPlatform

logger = logging.getLogger(__name__)


def create_platform(settings: Settings) -> ClusterPlatform:
    """Pick the live or the simulated platform once, at construction time"""
    if not settings.is_production:
        logger.warning(f"[SIM] Environment is {settings.environment}, using the simulated platform")
        return SimulatedPlatform(settings.simulation_delay, settings.namespace_prefix)

    clients = load_kube_clients(settings.k8s_in_cluster)
    if clients is None:
        logger.warning("[SIM] Kubernetes is unreachable, falling back to the simulated platform")
        return SimulatedPlatform(settings.simulation_delay, settings.namespace_prefix)
    return LivePlatform(clients, settings)
