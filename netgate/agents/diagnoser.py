"""Fault Diagnoser — deterministic decision table over a ClusterSnapshot.

Each rule is a pure function. Node rules run for every node in name order,
then the cluster rules run once, always in this priority order:

  1. ip_forward disabled           — IPForwardDisabled      / Fixable
  2. br_netfilter not loaded       — BrNetfilterMissing     / Fixable
  3. bridge-nf-call sysctl off     — folded into rule 2
  4. FORWARD DROP, no CNI chains   — ForwardPolicyBlocking  / Fixable
  5. IPVS leftovers, iptables mode — StaleIPVSState         / Fixable (per node)
  6. service CIDR mismatch         — ServiceCIDRMismatch    / Fixable (cluster)
  7. mixed iptables backends       — BackendConflict        / WarnOnly (cluster)

Unknown values never match a rule: missing evidence is not a fault. When
validation failed and nothing matched, a single ``Unknown`` finding carries
the raw snapshot so the gate ends with an explicit undiagnosed failure.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from netgate.models import (
    ClusterSnapshot,
    Finding,
    FindingKind,
    FindingSeverity,
    ForwardPolicy,
    IptablesBackend,
    KubeProxyMode,
    NodeState,
)
from netgate.tools.parsers import normalize_cidr

logger = logging.getLogger("netgate.diagnoser")

NodeRule = Callable[[NodeState], Optional[Finding]]
ClusterRule = Callable[[ClusterSnapshot], list[Finding]]


# ===================================================================
# Node rules
# ===================================================================

def check_ip_forward(node: NodeState) -> Optional[Finding]:
    """Rule 1: ``net.ipv4.ip_forward`` must be 1."""
    if node.ip_forward_enabled is not False:
        return None
    return Finding(
        kind=FindingKind.IPForwardDisabled,
        node_id=node.name,
        severity=FindingSeverity.Fixable,
        evidence=f"net.ipv4.ip_forward = {node.raw.get('ip_forward', '0').strip() or '0'}",
        suggested_fix="sysctl -w net.ipv4.ip_forward=1 and persist it in /etc/sysctl.d",
    )


def check_bridge_netfilter(node: NodeState) -> Optional[Finding]:
    """Rules 2 and 3: module loaded and both bridge-nf-call hooks on."""
    problems: list[str] = []
    if node.br_netfilter_loaded is False:
        problems.append("br_netfilter module not loaded")
    if node.bridge_nf_call_iptables is False:
        problems.append("net.bridge.bridge-nf-call-iptables != 1")
    if node.bridge_nf_call_ip6tables is False:
        problems.append("net.bridge.bridge-nf-call-ip6tables != 1")
    if not problems:
        return None
    return Finding(
        kind=FindingKind.BrNetfilterMissing,
        node_id=node.name,
        severity=FindingSeverity.Fixable,
        evidence="; ".join(problems),
        suggested_fix="modprobe br_netfilter, enable both bridge-nf-call sysctls, persist across reboot",
    )


def check_forward_policy(node: NodeState) -> Optional[Finding]:
    """Rule 4: a DROP policy is only a fault when nobody installed accept chains."""
    if node.forward_chain_policy != ForwardPolicy.DROP:
        return None
    if node.cni_forward_chains_present is not False:
        return None
    return Finding(
        kind=FindingKind.ForwardPolicyBlocking,
        node_id=node.name,
        severity=FindingSeverity.Fixable,
        evidence="FORWARD policy DROP and no KUBE-FORWARD / CNI forward chain referenced",
        suggested_fix="restart the CNI daemon and kube-proxy so they reprogram their accept rules",
    )


NODE_RULES: list[NodeRule] = [
    check_ip_forward,
    check_bridge_netfilter,
    check_forward_policy,
]


# ===================================================================
# Cluster rules
# ===================================================================

def check_stale_ipvs(snapshot: ClusterSnapshot) -> list[Finding]:
    """Rule 5: IPVS virtual servers left behind while kube-proxy runs iptables."""
    if snapshot.kube_proxy_mode != KubeProxyMode.iptables:
        return []
    findings: list[Finding] = []
    for name, node in sorted(snapshot.per_node.items()):
        if node.ipvs_modules_loaded is True and (node.ipvs_table_entry_count or 0) > 0:
            findings.append(Finding(
                kind=FindingKind.StaleIPVSState,
                node_id=name,
                severity=FindingSeverity.Fixable,
                evidence=(
                    f"kube-proxy mode iptables but {node.ipvs_table_entry_count} "
                    f"IPVS virtual server(s) present"
                ),
                suggested_fix="ipvsadm --clear on the node, then restart kube-proxy cluster-wide",
            ))
    return findings


def check_service_cidr(snapshot: ClusterSnapshot) -> list[Finding]:
    """Rule 6: kube-proxy clusterCIDR must equal the apiserver service range."""
    api = normalize_cidr(snapshot.service_cluster_cidr or "")
    proxy = normalize_cidr(snapshot.kube_proxy_configured_cidr or "")
    if api is None or proxy is None or api == proxy:
        return []
    return [Finding(
        kind=FindingKind.ServiceCIDRMismatch,
        node_id=None,
        severity=FindingSeverity.Fixable,
        evidence=f"kube-apiserver service range {api} != kube-proxy clusterCIDR {proxy}",
        suggested_fix=f"patch kube-proxy ConfigMap clusterCIDR to {api} and restart kube-proxy",
    )]


def check_backend_conflict(snapshot: ClusterSnapshot) -> list[Finding]:
    """Rule 7: nodes disagree on legacy vs nf_tables. Surfaced, never fixed."""
    by_backend: dict[str, list[str]] = {}
    for name, node in sorted(snapshot.per_node.items()):
        if node.iptables_backend != IptablesBackend.unknown:
            by_backend.setdefault(node.iptables_backend.value, []).append(name)
    if len(by_backend) < 2:
        return []
    detail = "; ".join(f"{b}: {', '.join(n)}" for b, n in sorted(by_backend.items()))
    return [Finding(
        kind=FindingKind.BackendConflict,
        node_id=None,
        severity=FindingSeverity.WarnOnly,
        evidence=f"iptables backends differ between nodes ({detail})",
        suggested_fix=(
            "manual: pick one backend (update-alternatives --set iptables ...) on every node "
            "and restart kube-proxy and the CNI; switching can break host services"
        ),
    )]


CLUSTER_RULES: list[ClusterRule] = [
    check_stale_ipvs,
    check_service_cidr,
    check_backend_conflict,
]


# ===================================================================
# Entry point
# ===================================================================

def diagnose(snapshot: ClusterSnapshot, validation_failed: bool = True) -> list[Finding]:
    """Return the ordered findings for *snapshot*.

    Pure function of its inputs: the same snapshot always yields the same list.
    """
    findings: list[Finding] = []
    for name in sorted(snapshot.per_node):
        node = snapshot.per_node[name]
        for rule in NODE_RULES:
            finding = rule(node)
            if finding is not None:
                findings.append(finding)

    for cluster_rule in CLUSTER_RULES:
        findings.extend(cluster_rule(snapshot))

    if not findings and validation_failed:
        findings.append(_undiagnosed(snapshot))

    logger.info(
        "Diagnosis: %d finding(s) [%s]",
        len(findings),
        ", ".join(f"{f.kind.value}@{f.scope}" for f in findings),
    )
    return findings


def _undiagnosed(snapshot: ClusterSnapshot) -> Finding:
    gaps = [
        f"{name}: {', '.join(node.missing_evidence())}"
        for name, node in sorted(snapshot.per_node.items())
        if node.missing_evidence()
    ]
    header = "Validation failed but no rule matched."
    if gaps:
        header += " Missing evidence on " + "; ".join(gaps) + "."
    return Finding(
        kind=FindingKind.Unknown,
        node_id=None,
        severity=FindingSeverity.WarnOnly,
        evidence=header + "\n" + snapshot.model_dump_json(indent=2),
        suggested_fix="manual investigation: review the diagnostics bundle",
    )
