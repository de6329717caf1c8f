"""Cluster Probe — read-only collection of node and cluster network state.

For every node: sysctls, loaded modules, the iptables FORWARD chain, the
IPVS table (when IPVS modules are loaded), and the iptables backend.
Cluster-wide: kube-proxy mode and clusterCIDR, the apiserver service range,
and CoreDNS / kube-proxy readiness.

Every query is independently fallible. A failed query leaves its field
unknown and marks the snapshot ``partial``; a node with no command channel
at all is kept in the snapshot with every field unknown.

Usage::

    from netgate.agents.probe import ClusterProbe
    snapshot = ClusterProbe(cluster, runner, gate_config).probe()
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from netgate import config
from netgate.config import GateConfig
from netgate.errors import NodeUnreachableError
from netgate.models import ClusterSnapshot, KubeProxyMode, NodeState
from netgate.tools import parsers
from netgate.tools.k8s_connector import ClusterClient
from netgate.tools.node_exec import NodeRunner

logger = logging.getLogger("netgate.probe")

# label -> shell command; order is the order the dumps appear in the bundle
NODE_QUERIES: dict[str, str] = {
    "ip_forward": "sysctl -n net.ipv4.ip_forward",
    "bridge_nf_call_iptables": "sysctl -n net.bridge.bridge-nf-call-iptables",
    "bridge_nf_call_ip6tables": "sysctl -n net.bridge.bridge-nf-call-ip6tables",
    "lsmod": "lsmod",
    "iptables_forward": "iptables -t filter -S FORWARD",
    "iptables_nat": "iptables -t nat -S",
    "iptables_version": "iptables --version",
    "ipvsadm": "ipvsadm -Ln",
}

_MISSING_KEY_MARKERS = ("No such file", "cannot stat", "unknown key")


class _NodeQueries:
    """Runs the per-node queries and remembers raw output and errors."""

    def __init__(self, runner: NodeRunner, node: str) -> None:
        self.runner = runner
        self.node = node
        self.raw: dict[str, str] = {}
        self.errors: list[str] = []
        self.missing_keys: set[str] = set()

    def get(self, label: str) -> Optional[str]:
        command = NODE_QUERIES[label]
        try:
            result = self.runner.run(self.node, command)
        except NodeUnreachableError as exc:
            # no answer to the first query means no channel to the node at all
            if not self.raw:
                raise
            logger.warning("[%s] `%s` got no answer: %s", self.node, command, exc.reason)
            self.raw[label] = ""
            self.errors.append(f"`{command}` got no answer: {exc.reason}")
            return None
        self.raw[label] = result.stdout if result.ok else (result.stdout + result.stderr)
        if result.ok:
            return result.stdout
        if any(m in result.stderr for m in _MISSING_KEY_MARKERS):
            self.missing_keys.add(label)
        self.errors.append(f"`{command}` exited {result.rc}: {result.stderr.strip()[:200]}")
        return None


class ClusterProbe:
    """Builds a fresh :class:`ClusterSnapshot` on every call."""

    def __init__(self, cluster: ClusterClient, runner: NodeRunner, gate_config: GateConfig) -> None:
        self.cluster = cluster
        self.runner = runner
        self.config = gate_config

    # -- public -------------------------------------------------------------

    def probe(self, nodes: Optional[list[str]] = None) -> ClusterSnapshot:
        logger.info("Probing cluster network state…")
        errors: list[str] = []

        node_names = nodes or self.config.nodes or self._safe(
            self.cluster.list_node_names, "node list", errors, default=[]
        )

        per_node: dict[str, NodeState] = {}
        if node_names:
            workers = min(len(node_names), self.config.max_workers)
            with ThreadPoolExecutor(max_workers=workers) as pool:
                for state in pool.map(self.probe_node, node_names):
                    per_node[state.name] = state

        cluster_fields = self._probe_cluster(errors)

        for state in per_node.values():
            if state.errors:
                errors.extend(f"{state.name}: {e}" for e in state.errors)

        snapshot = ClusterSnapshot(
            per_node=dict(sorted(per_node.items())),
            partial=bool(errors),
            errors=errors,
            **cluster_fields,
        )
        logger.info(
            "Probe complete: %d node(s), %d unreachable, mode=%s, partial=%s",
            len(per_node),
            sum(1 for s in per_node.values() if not s.reachable),
            snapshot.kube_proxy_mode.value,
            snapshot.partial,
        )
        return snapshot

    def probe_node(self, node: str) -> NodeState:
        q = _NodeQueries(self.runner, node)
        try:
            return self._collect_node(q)
        except NodeUnreachableError as exc:
            logger.warning("Node %s unreachable: %s", node, exc.reason)
            return NodeState.unreachable(node, exc.reason)

    # -- per node -----------------------------------------------------------

    def _collect_node(self, q: _NodeQueries) -> NodeState:
        fields: dict[str, Any] = {}

        out = q.get("ip_forward")
        fields["ip_forward_enabled"] = parsers.parse_sysctl_bool(out) if out is not None else None

        for label in ("bridge_nf_call_iptables", "bridge_nf_call_ip6tables"):
            out = q.get(label)
            if out is not None:
                fields[label] = parsers.parse_sysctl_bool(out)
            elif label in q.missing_keys:
                # key only exists once br_netfilter is loaded
                fields[label] = False

        out = q.get("lsmod")
        if out is not None:
            modules = parsers.parse_lsmod(out)
            fields["br_netfilter_loaded"] = "br_netfilter" in modules
            fields["ipvs_modules_loaded"] = parsers.has_ipvs_modules(modules)

        out = q.get("iptables_forward")
        if out is not None:
            policy, present = parsers.parse_forward_chain(out)
            fields["forward_chain_policy"] = policy
            fields["cni_forward_chains_present"] = present

        q.get("iptables_nat")

        out = q.get("iptables_version")
        if out is not None:
            fields["iptables_backend"] = parsers.parse_iptables_backend(out)

        if fields.get("ipvs_modules_loaded"):
            out = q.get("ipvsadm")
            if out is not None:
                fields["ipvs_table_entry_count"] = parsers.count_ipvs_services(out)
        elif fields.get("ipvs_modules_loaded") is False:
            fields["ipvs_table_entry_count"] = 0

        return NodeState(name=q.node, errors=q.errors, raw=q.raw, **fields)

    # -- cluster wide -------------------------------------------------------

    def _probe_cluster(self, errors: list[str]) -> dict[str, Any]:
        fields: dict[str, Any] = {}

        data = self._safe(
            lambda: self.cluster.read_configmap(config.KUBE_SYSTEM, config.KUBE_PROXY_CONFIGMAP),
            "kube-proxy configmap",
            errors,
            default=None,
        )
        if data is not None:
            raw = data.get(config.KUBE_PROXY_CONFIG_KEY, "")
            mode, cidr = parsers.parse_kube_proxy_config(raw)
            fields.update(
                kube_proxy_mode=mode,
                kube_proxy_configured_cidr=cidr,
                kube_proxy_config_raw=raw,
            )
        else:
            fields["kube_proxy_mode"] = KubeProxyMode.unknown

        fields["service_cluster_cidr"] = self._service_cidr(errors)

        ready = self._safe(
            lambda: self.cluster.deployment_ready(config.KUBE_SYSTEM, config.COREDNS_SELECTOR),
            "coredns status",
            errors,
            default=(False, "unknown"),
        )
        fields["coredns_ready"], fields["coredns_status"] = ready

        ready = self._safe(
            lambda: self.cluster.daemonset_ready(config.KUBE_SYSTEM, config.KUBE_PROXY_DAEMONSET),
            "kube-proxy status",
            errors,
            default=(False, "unknown"),
        )
        fields["kube_proxy_ready"], fields["kube_proxy_status"] = ready
        return fields

    def _service_cidr(self, errors: list[str]) -> Optional[str]:
        cidr = self._safe(
            lambda: read_service_cidr(self.cluster, self.config),
            "kube-apiserver service range",
            errors,
            default=None,
        )
        if cidr is None and not any(e.startswith("kube-apiserver") for e in errors):
            errors.append("kube-apiserver service range: --service-cluster-ip-range not found")
        return cidr

    @staticmethod
    def _safe(fn: Callable[[], Any], label: str, errors: list[str], default: Any) -> Any:
        """Call *fn*; on any error log it, record it, and return *default*."""
        try:
            return fn()
        except Exception as exc:
            logger.warning("Could not read %s: %s", label, exc)
            errors.append(f"{label}: {exc}")
            return default


def read_service_cidr(cluster: ClusterClient, gate_config: GateConfig) -> Optional[str]:
    """The apiserver's ``--service-cluster-ip-range``, or the configured override."""
    if gate_config.service_cidr_override:
        return gate_config.service_cidr_override
    for command in cluster.apiserver_commands():
        cidr = parsers.parse_service_cidr_flag(command)
        if cidr:
            return cidr
    return None
