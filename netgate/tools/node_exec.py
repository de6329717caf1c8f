"""Node command runners.

The probe and remediator need a shell on each node. Two channels are
supported:

* ``PodExecRunner`` execs into the privileged, host-PID node-agent pod
  scheduled on the node and enters the host namespaces with ``nsenter``.
* ``SSHRunner`` runs the command over ``ssh`` in batch mode.

Both return a :class:`CommandResult` and raise
:class:`~netgate.errors.NodeUnreachableError` when no channel to the node
can be opened. A command that runs and exits non-zero is *not* an error
here; callers use :meth:`NodeRunner.check` when they need one.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional

from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from netgate import config
from netgate.config import GateConfig
from netgate.errors import CommandFailedError, NodeUnreachableError
from netgate.tools.k8s_connector import ClusterClient

logger = logging.getLogger("netgate.node_exec")

NSENTER = ["nsenter", "-t", "1", "-m", "-u", "-i", "-n", "-p", "--"]


@dataclass(frozen=True)
class CommandResult:
    rc: int
    stdout: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.rc == 0


class NodeRunner:
    """Base class: run a shell command on a named node."""

    def run(self, node: str, command: str, timeout: Optional[int] = None) -> CommandResult:
        raise NotImplementedError

    def check(self, node: str, command: str, timeout: Optional[int] = None) -> CommandResult:
        """Run *command* and raise :class:`CommandFailedError` on non-zero exit."""
        result = self.run(node, command, timeout)
        if not result.ok:
            raise CommandFailedError(node, command, result.rc, result.stderr or result.stdout)
        return result


class PodExecRunner(NodeRunner):
    """Exec through the node-agent DaemonSet pod on each node."""

    def __init__(
        self,
        cluster: ClusterClient,
        namespace: str = config.AGENT_NAMESPACE,
        selector: str = config.AGENT_SELECTOR,
        timeout: int = config.COMMAND_TIMEOUT,
    ) -> None:
        self.cluster = cluster
        self.namespace = namespace
        self.selector = selector
        self.timeout = timeout
        self._pods: dict[str, str] = {}

    def _agent_pod(self, node: str) -> str:
        if node in self._pods:
            return self._pods[node]
        try:
            pods = self.cluster.list_pods(self.namespace, self.selector, node)
        except ApiException as exc:
            raise NodeUnreachableError(node, f"cannot list agent pods: {exc.reason}") from exc
        running = [p for p in pods if p.status.phase == "Running"]
        if not running:
            raise NodeUnreachableError(
                node, f"no running pod matching {self.selector} in {self.namespace}"
            )
        self._pods[node] = running[0].metadata.name
        return self._pods[node]

    def run(self, node: str, command: str, timeout: Optional[int] = None) -> CommandResult:
        pod = self._agent_pod(node)
        argv = NSENTER + ["sh", "-c", command]
        logger.debug("[%s] exec %s", node, command)
        try:
            resp = stream(
                self.cluster.core_v1.connect_get_namespaced_pod_exec,
                pod,
                self.namespace,
                command=argv,
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )
            try:
                resp.run_forever(timeout=timeout or self.timeout)
                stdout = resp.read_stdout() or ""
                stderr = resp.read_stderr() or ""
                rc = resp.returncode
            finally:
                resp.close()
        except ApiException as exc:
            self._pods.pop(node, None)
            raise NodeUnreachableError(node, f"exec into {pod} failed: {exc.reason}") from exc
        except Exception as exc:
            self._pods.pop(node, None)
            raise NodeUnreachableError(node, f"exec into {pod} failed: {exc}") from exc
        if rc is None:
            raise NodeUnreachableError(node, f"`{command}` did not finish within {timeout or self.timeout}s")
        return CommandResult(rc=rc, stdout=stdout, stderr=stderr)


class SSHRunner(NodeRunner):
    """Run commands over ``ssh``; non-root users go through ``sudo -n``."""

    def __init__(
        self,
        user: str = config.SSH_USER,
        key: Optional[str] = config.SSH_KEY,
        addresses: Optional[dict[str, str]] = None,
        timeout: int = config.COMMAND_TIMEOUT,
    ) -> None:
        self.user = user
        self.key = key
        self.addresses = addresses or {}
        self.timeout = timeout

    def _argv(self, node: str, command: str) -> list[str]:
        host = self.addresses.get(node, node)
        argv = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "ConnectTimeout=5",
            "-o", "StrictHostKeyChecking=accept-new",
        ]
        if self.key:
            argv += ["-i", self.key]
        remote = f"sh -c {shlex.quote(command)}"
        if self.user != "root":
            remote = f"sudo -n {remote}"
        return argv + [f"{self.user}@{host}", remote]

    def run(self, node: str, command: str, timeout: Optional[int] = None) -> CommandResult:
        logger.debug("[%s] ssh %s", node, command)
        try:
            proc = subprocess.run(
                self._argv(node, command),
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise NodeUnreachableError(node, f"ssh timed out after {exc.timeout}s") from exc
        except OSError as exc:
            raise NodeUnreachableError(node, f"cannot run ssh: {exc}") from exc
        # 255 is ssh's own connection failure code
        if proc.returncode == 255:
            raise NodeUnreachableError(node, proc.stderr.strip() or "ssh connection failed")
        return CommandResult(rc=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def build_runner(cluster: ClusterClient, gate_config: GateConfig) -> NodeRunner:
    """Pick the node runner named by ``gate_config.node_exec``."""
    if gate_config.node_exec == "ssh":
        return SSHRunner(
            user=gate_config.ssh_user,
            key=gate_config.ssh_key,
            addresses=cluster.node_addresses(),
            timeout=gate_config.command_timeout,
        )
    return PodExecRunner(
        cluster,
        namespace=gate_config.agent_namespace,
        selector=gate_config.agent_selector,
        timeout=gate_config.command_timeout,
    )
