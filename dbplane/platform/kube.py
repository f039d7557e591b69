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

import functools
import logging
from typing import Callable, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from dbplane.exceptions import PlatformPermissionError

logger = logging.getLogger(__name__)


class KubeClients:
    """Typed API handles sharing one ApiClient"""

    def __init__(self, api_client: client.ApiClient = None):
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)
        self.batch = client.BatchV1Api(self.api_client)
        self.networking = client.NetworkingV1Api(self.api_client)
        self.rbac = client.RbacAuthorizationV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)


def load_kube_clients(in_cluster: bool = False) -> Optional[KubeClients]:
    """Load cluster credentials and check the API server, None when it cannot be reached"""
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                config.load_kube_config()

        clients = KubeClients()
        clients.core.list_namespace(limit=1, _request_timeout=5)
        logger.info("Connected to Kubernetes API server")
        return clients
    except Exception as e:
        logger.warning(f"Kubernetes API server is not reachable: {e}")
        return None


def check_permission(e: ApiException, operation: str):
    if e.status in (401, 403):
        logger.error(f"Kubernetes denied {operation}: {e.status} {e.reason}")
        raise PlatformPermissionError(operation, e.status, e.reason or "") from e


def create_or_skip(create: Callable, description: str, **kwargs) -> bool:
    """Create an object, treating 409 as success. Returns False when it already existed."""
    try:
        create(**kwargs)
        logger.info(f"Created {description}")
        return True
    except ApiException as e:
        if e.status == 409:
            logger.info(f"{description} already exists")
            return False
        check_permission(e, f"create {description}")
        raise


def delete_if_exists(delete: Callable, description: str, **kwargs) -> bool:
    """Delete an object, treating 404 as success. Returns False when it was already gone."""
    try:
        delete(**kwargs)
        logger.info(f"Deleted {description}")
        return True
    except ApiException as e:
        if e.status == 404:
            logger.debug(f"{description} already absent")
            return False
        check_permission(e, f"delete {description}")
        raise


def read_or_none(read: Callable, description: str, **kwargs):
    try:
        return read(**kwargs)
    except ApiException as e:
        if e.status == 404:
            return None
        check_permission(e, f"read {description}")
        raise


def surface_permission_errors(operation: str):
    """Turn 401/403 responses raised inside a platform operation into PlatformPermissionError"""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except ApiException as e:
                check_permission(e, operation)
                raise

        return wrapper

    return decorator
