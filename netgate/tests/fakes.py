"""
In-memory stand-ins for the cluster API and the node command channel.

FakeRunner keeps a small model of each node's kernel and netfilter state
and answers the exact commands the probe and remediator send, so the real
probe / diagnoser / remediator code runs end to end without a cluster.
"""

import re
import threading
from dataclasses import dataclass, field
from typing import Optional

from kubernetes.client.rest import ApiException

from netgate.errors import ClusterUnreachableError, NodeUnreachableError
from netgate.models import FailureReason, KubeProxyMode, ValidationResult
from netgate.tools import parsers
from netgate.tools.node_exec import CommandResult, NodeRunner

KUBE_PROXY_CONF = """\
apiVersion: kubeproxy.config.k8s.io/v1alpha1
kind: KubeProxyConfiguration
mode: {mode}
clusterCIDR: {cidr}
"""

LSMOD_HEADER = "Module                  Size  Used by\n"

_GREP_RE = re.compile(r"^grep -qxF '([^']*)' (\S+)$")
_PERSIST_RE = re.compile(r"echo '([^']*)' >> (\S+)\)$")
_SYSCTL_READ_RE = re.compile(r"^sysctl -n (\S+)$")
_SYSCTL_WRITE_RE = re.compile(r"^sysctl -w (\S+)=(\d)$")

BRIDGE_KEYS = {
    "net.bridge.bridge-nf-call-iptables": "bridge_iptables",
    "net.bridge.bridge-nf-call-ip6tables": "bridge_ip6tables",
}


@dataclass
class FakeNode:
    ip_forward: int = 1
    bridge_iptables: int = 1
    bridge_ip6tables: int = 1
    modules: set = field(default_factory=lambda: {"br_netfilter", "overlay"})
    forward_policy: str = "ACCEPT"
    forward_chains: list = field(default_factory=lambda: ["KUBE-FORWARD"])
    ipvs_entries: int = 0
    backend: str = "nf_tables"
    files: dict = field(default_factory=dict)
    reachable: bool = True

    def lsmod(self) -> str:
        return LSMOD_HEADER + "".join(f"{m:<24}16384  0\n" for m in sorted(self.modules))

    def forward_dump(self) -> str:
        lines = [f"-P FORWARD {self.forward_policy}"]
        lines += [f"-A FORWARD -m comment --comment \"forward rules\" -j {c}" for c in self.forward_chains]
        return "\n".join(lines) + "\n"

    def ipvsadm(self) -> str:
        out = (
            "IP Virtual Server version 1.2.1 (size=4096)\n"
            "Prot LocalAddress:Port Scheduler Flags\n"
            "  -> RemoteAddress:Port           Forward Weight ActiveConn InActConn\n"
        )
        for i in range(self.ipvs_entries):
            out += f"TCP  10.96.0.{i + 1}:443 rr\n  -> 192.168.1.10:6443            Masq    1      0          0\n"
        return out


class FakeRunner(NodeRunner):
    """Answers node commands from per-node :class:`FakeNode` state."""

    def __init__(self, nodes: Optional[dict] = None) -> None:
        self.nodes: dict[str, FakeNode] = nodes if nodes is not None else {
            "node-a": FakeNode(),
            "node-b": FakeNode(),
        }
        self.commands: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def commands_for(self, node: str) -> list[str]:
        return [c for n, c in self.commands if n == node]

    def run(self, node: str, command: str, timeout: Optional[int] = None) -> CommandResult:
        state = self.nodes.get(node)
        if state is None or not state.reachable:
            raise NodeUnreachableError(node, "no node-agent pod on node")
        with self._lock:
            self.commands.append((node, command))
        return self._answer(state, command)

    # ------------------------------------------------------------------

    def _answer(self, n: FakeNode, command: str) -> CommandResult:
        if command.startswith("mkdir -p "):
            m = _PERSIST_RE.search(command)
            n.files.setdefault(m.group(2), set()).add(m.group(1))
            return CommandResult(0, "")

        m = _GREP_RE.match(command)
        if m:
            return CommandResult(0 if m.group(1) in n.files.get(m.group(2), set()) else 1, "")

        m = _SYSCTL_READ_RE.match(command)
        if m:
            key = m.group(1)
            if key == "net.ipv4.ip_forward":
                return CommandResult(0, f"{n.ip_forward}\n")
            if key in BRIDGE_KEYS:
                if "br_netfilter" not in n.modules:
                    path = "/proc/sys/" + key.replace(".", "/")
                    return CommandResult(255, "", f"sysctl: cannot stat {path}: No such file or directory\n")
                return CommandResult(0, f"{getattr(n, BRIDGE_KEYS[key])}\n")
            return CommandResult(255, "", f"sysctl: unknown key '{key}'\n")

        m = _SYSCTL_WRITE_RE.match(command)
        if m:
            key, value = m.group(1), int(m.group(2))
            if key == "net.ipv4.ip_forward":
                n.ip_forward = value
            elif key in BRIDGE_KEYS and "br_netfilter" in n.modules:
                setattr(n, BRIDGE_KEYS[key], value)
            else:
                return CommandResult(255, "", f"sysctl: cannot stat {key}\n")
            return CommandResult(0, f"{key} = {value}\n")

        if command.startswith("modprobe "):
            n.modules.add(command.split()[1])
            return CommandResult(0, "")
        if command == "lsmod":
            return CommandResult(0, n.lsmod())
        if command == "iptables -t filter -S FORWARD":
            return CommandResult(0, n.forward_dump())
        if command == "iptables -t nat -S":
            return CommandResult(0, "-P PREROUTING ACCEPT\n-P POSTROUTING ACCEPT\n")
        if command == "iptables --version":
            return CommandResult(0, f"iptables v1.8.7 ({n.backend})\n")
        if command == "ipvsadm -Ln":
            return CommandResult(0, n.ipvsadm())
        if command.startswith("ipvsadm --clear"):
            n.ipvs_entries = 0
            return CommandResult(0, "")
        return CommandResult(127, "", f"sh: {command.split()[0]}: not found\n")


class FakeCluster:
    """Implements the :class:`ClusterClient` methods the gate uses."""

    def __init__(
        self,
        runner: FakeRunner,
        *,
        mode: str = "iptables",
        kube_proxy_cidr: str = "10.96.0.0/12",
        service_cidr: str = "10.96.0.0/12",
        reachable: bool = True,
    ) -> None:
        self.runner = runner
        self.reachable = reachable
        self.configmap = {"config.conf": KUBE_PROXY_CONF.format(mode=mode, cidr=kube_proxy_cidr)}
        self.service_cidr = service_cidr
        self.dns_ip = "10.96.0.10"
        self.restarts: list[str] = []
        self.rollouts: list[str] = []
        self.deleted_selectors: list[tuple[str, Optional[str]]] = []
        self.patches: list[dict] = []
        self.rollout_error: Optional[Exception] = None
        self.configmap_error: Optional[Exception] = None
        self.pod_waits: list[tuple[str, Optional[str]]] = []
        self.pods_ready_error: Optional[Exception] = None

        # validation pod behaviour
        self.create_failures = 0
        self.created: list[str] = []
        self.deleted_pods: list[str] = []
        self.phases: list[str] = ["Succeeded"]
        self.logs = "NETGATE_RESULT=dns_ok\nNETGATE_RESULT=connect_ok\nNETGATE_RESULT=api_ok\n"

    def ping(self) -> None:
        if not self.reachable:
            raise ClusterUnreachableError("connection refused")

    # --- nodes ------------------------------------------------------------

    def list_node_names(self) -> list[str]:
        return sorted(self.runner.nodes)

    # --- pods -------------------------------------------------------------

    def create_pod(self, namespace: str, manifest: dict) -> str:
        name = manifest["metadata"]["name"]
        if self.create_failures:
            self.create_failures -= 1
            raise ApiException(status=500, reason="etcdserver: request timed out")
        self.created.append(name)
        return name

    def pod_phase(self, namespace: str, name: str) -> str:
        if len(self.phases) > 1:
            return self.phases.pop(0)
        return self.phases[0]

    def pod_logs(self, namespace: str, name: str) -> str:
        return self.logs

    def delete_pod(self, namespace: str, name: str) -> None:
        self.deleted_pods.append(name)

    def delete_pods(self, namespace: str, selector: str, node: Optional[str] = None) -> int:
        self.deleted_selectors.append((selector, node))
        if selector != "k8s-app=calico-node":
            return 0
        # calico-node comes back and reinstalls its accept chain
        targets = [node] if node else list(self.runner.nodes)
        for name in targets:
            if "cali-FORWARD" not in self.runner.nodes[name].forward_chains:
                self.runner.nodes[name].forward_chains.append("cali-FORWARD")
        return len(targets)

    def wait_for_pods_ready(self, namespace, selector, node, timeout, poll_interval=2.0, cancel=None) -> None:
        if self.pods_ready_error is not None:
            raise self.pods_ready_error
        self.pod_waits.append((selector, node))

    def apiserver_commands(self) -> list[list[str]]:
        return [[
            "kube-apiserver",
            "--advertise-address=192.168.1.10",
            f"--service-cluster-ip-range={self.service_cidr}",
        ]]

    # --- services / configmaps -------------------------------------------

    def service_cluster_ip(self, namespace: str, name: str) -> Optional[str]:
        return self.dns_ip

    def read_configmap(self, namespace: str, name: str) -> dict:
        if self.configmap_error is not None:
            raise self.configmap_error
        return dict(self.configmap)

    def configmap_manifest(self, namespace: str, name: str) -> dict:
        return {"metadata": {"name": name, "namespace": namespace}, "data": dict(self.configmap)}

    def patch_configmap_data(self, namespace: str, name: str, data: dict) -> None:
        self.patches.append(dict(data))
        self.configmap.update(data)

    # --- workloads --------------------------------------------------------

    def deployment_ready(self, namespace: str, selector: str) -> tuple:
        return True, "2/2 ready"

    def daemonset_ready(self, namespace: str, name: str) -> tuple:
        n = len(self.runner.nodes)
        return True, f"{n}/{n} ready"

    def restart_daemonset(self, namespace: str, name: str) -> None:
        self.restarts.append(name)
        if name == "kube-proxy":
            # kube-proxy reinstalls KUBE-FORWARD on startup
            for node in self.runner.nodes.values():
                if "KUBE-FORWARD" not in node.forward_chains:
                    node.forward_chains.append("KUBE-FORWARD")

    def wait_for_rollout(self, namespace, name, timeout, poll_interval=2.0, cancel=None) -> None:
        if self.rollout_error is not None:
            raise self.rollout_error
        self.rollouts.append(name)

    # --- helpers for tests ------------------------------------------------

    @property
    def kube_proxy_mode(self) -> KubeProxyMode:
        return parsers.parse_kube_proxy_config(self.configmap["config.conf"])[0]

    @property
    def kube_proxy_cidr(self) -> Optional[str]:
        return parsers.parse_kube_proxy_config(self.configmap["config.conf"])[1]


def network_healthy(cluster: FakeCluster, runner: FakeRunner) -> bool:
    """Would pod-to-ClusterIP DNS work given the simulated state?"""
    backends = {n.backend for n in runner.nodes.values()}
    if len(backends) > 1:
        return False
    if cluster.kube_proxy_cidr != parsers.normalize_cidr(cluster.service_cidr):
        return False
    for n in runner.nodes.values():
        if n.ip_forward != 1:
            return False
        if "br_netfilter" not in n.modules or n.bridge_iptables != 1 or n.bridge_ip6tables != 1:
            return False
        if n.forward_policy == "DROP" and not n.forward_chains:
            return False
        if cluster.kube_proxy_mode == KubeProxyMode.iptables and n.ipvs_entries:
            return False
    return True


class FakeValidator:
    """Validation outcome follows the simulated network state."""

    def __init__(self, cluster: FakeCluster, runner: FakeRunner, on_call=None) -> None:
        self.cluster = cluster
        self.runner = runner
        self.calls = 0
        self.on_call = on_call

    def validate(self, timeout=None, namespace=None) -> ValidationResult:
        self.calls += 1
        if self.on_call is not None:
            forced = self.on_call(self.calls)
            if forced is not None:
                return forced
        if network_healthy(self.cluster, self.runner):
            return ValidationResult.ok("NETGATE_RESULT=dns_ok", f"probe-{self.calls}")
        return ValidationResult.fail(
            FailureReason.DNSResolutionFailed,
            "nslookup: can't resolve 'kubernetes.default.svc.cluster.local'\nNETGATE_RESULT=dns_fail",
            f"probe-{self.calls}",
        )
