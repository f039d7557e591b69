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
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from dbplane.exceptions import ExecError
from dbplane.platform.kube import KubeClients, check_permission

logger = logging.getLogger(__name__)


class PodExecutor(ABC):
    """Runs an administrative command inside a pod"""

    @abstractmethod
    def exec(self, namespace: str, pod: str, command: List[str]) -> Tuple[str, Optional[ExecError]]:
        """
        Run a command and collect its output.

        Returns:
            (stdout, error) where error is None when the command exited with 0
        """
        pass


class KubePodExecutor(PodExecutor):
    """Pod exec over the Kubernetes websocket API"""

    def __init__(self, clients: KubeClients, container: str = None, timeout: int = 60):
        self.clients = clients
        self.container = container
        self.timeout = timeout

    def exec(self, namespace: str, pod: str, command: List[str]) -> Tuple[str, Optional[ExecError]]:
        kwargs = dict(command=command, stderr=True, stdin=False, stdout=True, tty=False, _preload_content=False)
        if self.container:
            kwargs["container"] = self.container

        try:
            resp = stream(self.clients.core.connect_get_namespaced_pod_exec, pod, namespace, **kwargs)
        except ApiException as e:
            check_permission(e, f"exec in pod {namespace}/{pod}")
            return "", ExecError(pod, f"{e.status} {e.reason}")

        try:
            resp.run_forever(timeout=self.timeout)
            stdout = resp.read_stdout() or ""
            stderr = resp.read_stderr() or ""
            returncode = resp.returncode
        finally:
            resp.close()

        if returncode:
            logger.warning(f"Command in {namespace}/{pod} exited with {returncode}: {stderr.strip()}")
            return stdout, ExecError(pod, stderr.strip() or f"exit status {returncode}")
        return stdout, None
