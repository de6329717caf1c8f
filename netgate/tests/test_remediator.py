"""
Tests for agents/remediator.py - corrective actions.

Tests use FakeCluster / FakeRunner, no real cluster required.
"""

import json

from netgate import config
from netgate.agents.remediator import EMERGENCY_EVIDENCE, Remediator
from netgate.errors import RolloutTimeoutError
from netgate.models import Finding, FindingKind, FindingSeverity, OutcomeStatus


def _finding(kind: FindingKind, node=None, severity=FindingSeverity.Fixable) -> Finding:
    return Finding(kind=kind, node_id=node, severity=severity, evidence="test")


def _statuses(outcomes):
    return [(f.kind, f.node_id, o.status) for f, o in outcomes]


def test_ip_forward_fix_is_idempotent(gate_config, cluster, runner):
    """Test the first pass applies the fix and the second reports AlreadyCorrect."""
    runner.nodes["node-a"].ip_forward = 0
    remediator = Remediator(cluster, runner, gate_config)
    findings = [_finding(FindingKind.IPForwardDisabled, "node-a")]

    first = remediator.remediate(findings)
    assert _statuses(first) == [(FindingKind.IPForwardDisabled, "node-a", OutcomeStatus.Applied)]
    assert runner.nodes["node-a"].ip_forward == 1
    assert "net.ipv4.ip_forward = 1" in runner.nodes["node-a"].files[config.SYSCTL_PERSIST_FILE]

    second = remediator.remediate(findings)
    assert _statuses(second) == [(FindingKind.IPForwardDisabled, "node-a", OutcomeStatus.AlreadyCorrect)]
    assert not any(c.startswith("sysctl -w") for c in runner.commands_for("node-a")[-2:])


def test_br_netfilter_fix_loads_and_persists(gate_config, cluster, runner):
    """Test the module is loaded, persisted, and both sysctls enabled."""
    node = runner.nodes["node-b"]
    node.modules = {"overlay"}
    node.bridge_iptables = 0
    node.bridge_ip6tables = 0

    outcomes = Remediator(cluster, runner, gate_config).remediate(
        [_finding(FindingKind.BrNetfilterMissing, "node-b")]
    )

    assert outcomes[0][1].status == OutcomeStatus.Applied
    assert "br_netfilter" in node.modules
    assert node.bridge_iptables == 1 and node.bridge_ip6tables == 1
    assert {"br_netfilter", "overlay"} <= node.files[config.MODULES_PERSIST_FILE]
    assert "net.bridge.bridge-nf-call-iptables = 1" in node.files[config.SYSCTL_PERSIST_FILE]

    again = Remediator(cluster, runner, gate_config).remediate(
        [_finding(FindingKind.BrNetfilterMissing, "node-b")]
    )
    assert again[0][1].status == OutcomeStatus.AlreadyCorrect


def test_warn_only_findings_are_never_acted_on(gate_config, cluster, runner):
    """Test BackendConflict and Unknown findings produce no actions."""
    findings = [
        _finding(FindingKind.BackendConflict, severity=FindingSeverity.WarnOnly),
        _finding(FindingKind.Unknown, severity=FindingSeverity.WarnOnly),
    ]
    assert Remediator(cluster, runner, gate_config).remediate(findings) == []
    assert runner.commands == []
    assert cluster.restarts == []


def test_forward_policy_restarts_cni_and_kube_proxy_once(gate_config, cluster, runner):
    """Test CNI pods are restarted per node and kube-proxy exactly once."""
    for node in runner.nodes.values():
        node.forward_policy = "DROP"
        node.forward_chains = []

    outcomes = Remediator(cluster, runner, gate_config).remediate([
        _finding(FindingKind.ForwardPolicyBlocking, "node-a"),
        _finding(FindingKind.ForwardPolicyBlocking, "node-b"),
    ])

    assert [o.status for _, o in outcomes] == [OutcomeStatus.Applied, OutcomeStatus.Applied]
    assert ("k8s-app=calico-node", "node-a") in cluster.deleted_selectors
    assert ("k8s-app=calico-node", "node-b") in cluster.deleted_selectors
    assert sorted(cluster.pod_waits) == [("k8s-app=calico-node", "node-a"), ("k8s-app=calico-node", "node-b")]
    assert cluster.restarts == ["kube-proxy"]
    assert cluster.rollouts == ["kube-proxy"]
    assert all(node.forward_policy == "DROP" for node in runner.nodes.values())


def test_stale_ipvs_cleared(gate_config, cluster, runner):
    """Test the IPVS table is flushed and kube-proxy restarted."""
    runner.nodes["node-a"].modules |= {"ip_vs"}
    runner.nodes["node-a"].ipvs_entries = 5

    remediator = Remediator(cluster, runner, gate_config)
    outcomes = remediator.remediate([_finding(FindingKind.StaleIPVSState, "node-a")])
    assert outcomes[0][1].status == OutcomeStatus.Applied
    assert runner.nodes["node-a"].ipvs_entries == 0
    assert cluster.restarts == ["kube-proxy"]

    again = remediator.remediate([_finding(FindingKind.StaleIPVSState, "node-a")])
    assert again[0][1].status == OutcomeStatus.AlreadyCorrect
    assert cluster.restarts == ["kube-proxy"]


def test_service_cidr_patch_backs_up_configmap(gate_config, cluster, runner):
    """Test the ConfigMap is backed up, patched, and kube-proxy restarted once."""
    cluster.configmap["config.conf"] = "mode: iptables\nclusterCIDR: 10.97.0.0/16\n"
    remediator = Remediator(cluster, runner, gate_config)

    outcomes = remediator.remediate([_finding(FindingKind.ServiceCIDRMismatch)])

    assert outcomes[0][1].status == OutcomeStatus.Applied
    assert cluster.kube_proxy_cidr == "10.96.0.0/12"
    assert cluster.restarts == ["kube-proxy"]
    backups = list(gate_config.backup_dir.glob("kube-proxy-configmap-*.json"))
    assert len(backups) == 1
    saved = json.loads(backups[0].read_text())
    assert "10.97.0.0/16" in saved["data"]["config.conf"]

    again = remediator.remediate([_finding(FindingKind.ServiceCIDRMismatch)])
    assert again[0][1].status == OutcomeStatus.AlreadyCorrect
    assert len(cluster.patches) == 1
    assert cluster.restarts == ["kube-proxy"]


def test_cidr_patch_and_node_fix_share_one_restart(gate_config, cluster, runner):
    """Test a CIDR patch restart also covers node actions that queued one."""
    cluster.configmap["config.conf"] = "mode: iptables\nclusterCIDR: 10.97.0.0/16\n"
    runner.nodes["node-a"].forward_policy = "DROP"
    runner.nodes["node-a"].forward_chains = []

    Remediator(cluster, runner, gate_config).remediate([
        _finding(FindingKind.ForwardPolicyBlocking, "node-a"),
        _finding(FindingKind.ServiceCIDRMismatch),
    ])
    assert cluster.restarts == ["kube-proxy"]


def test_failed_action_does_not_abort_the_rest(gate_config, cluster, runner):
    """Test an unreachable node fails its action while other nodes still get fixed."""
    runner.nodes["node-a"].ip_forward = 0
    runner.nodes["node-a"].reachable = False
    runner.nodes["node-b"].ip_forward = 0

    outcomes = Remediator(cluster, runner, gate_config).remediate([
        _finding(FindingKind.IPForwardDisabled, "node-a"),
        _finding(FindingKind.IPForwardDisabled, "node-b"),
    ])

    assert _statuses(outcomes) == [
        (FindingKind.IPForwardDisabled, "node-a", OutcomeStatus.Failed),
        (FindingKind.IPForwardDisabled, "node-b", OutcomeStatus.Applied),
    ]
    assert "node-a" in outcomes[0][1].error
    assert runner.nodes["node-b"].ip_forward == 1


def test_rollout_timeout_fails_pending_actions(gate_config, cluster, runner):
    """Test actions waiting on kube-proxy are Failed when its rollout times out."""
    runner.nodes["node-a"].modules |= {"ip_vs"}
    runner.nodes["node-a"].ipvs_entries = 2
    cluster.rollout_error = RolloutTimeoutError("rollout not complete after 180s")

    outcomes = Remediator(cluster, runner, gate_config).remediate(
        [_finding(FindingKind.StaleIPVSState, "node-a")]
    )
    assert outcomes[0][1].status == OutcomeStatus.Failed
    assert "rollout" in outcomes[0][1].error


def test_emergency_clear_covers_every_node(gate_config, cluster, runner):
    """Test the opt-in emergency clear flushes IPVS on all nodes."""
    for node in runner.nodes.values():
        node.modules |= {"ip_vs"}
        node.ipvs_entries = 3

    outcomes = Remediator(cluster, runner, gate_config).remediate([], emergency_clear=True)

    assert _statuses(outcomes) == [
        (FindingKind.StaleIPVSState, "node-a", OutcomeStatus.Applied),
        (FindingKind.StaleIPVSState, "node-b", OutcomeStatus.Applied),
    ]
    assert all(n.ipvs_entries == 0 for n in runner.nodes.values())
    assert cluster.restarts == ["kube-proxy"]


def test_cni_pods_not_ready_fails_the_action(gate_config, cluster, runner):
    """Test CNI pods that never come back Ready fail the FORWARD action."""
    runner.nodes["node-a"].forward_policy = "DROP"
    runner.nodes["node-a"].forward_chains = []
    cluster.pods_ready_error = RolloutTimeoutError("pods kube-system/k8s-app=calico-node on node-a not ready after 180s")

    outcomes = Remediator(cluster, runner, gate_config).remediate(
        [_finding(FindingKind.ForwardPolicyBlocking, "node-a")]
    )

    assert outcomes[0][1].status == OutcomeStatus.Failed
    assert "not ready" in outcomes[0][1].error
    assert cluster.restarts == []


def test_forward_policy_without_cni_pods_restarts_kube_proxy_only(gate_config, cluster, runner):
    """Test the outcome says so when no CNI selector matches a pod."""
    runner.nodes["node-a"].forward_policy = "DROP"
    runner.nodes["node-a"].forward_chains = []
    cfg = gate_config.model_copy(update={"cni_selectors": ["app=flannel"]})

    outcomes = Remediator(cluster, runner, cfg).remediate(
        [_finding(FindingKind.ForwardPolicyBlocking, "node-a")]
    )

    assert outcomes[0][1].status == OutcomeStatus.Applied
    assert "only kube-proxy restart" in outcomes[0][1].detail
    assert cluster.pod_waits == []
    assert cluster.restarts == ["kube-proxy"]


def test_stale_ipvs_finding_never_triggers_emergency_clear(gate_config, cluster, runner):
    """Test a regular finding takes the normal path whatever its evidence says."""
    finding = Finding(
        kind=FindingKind.StaleIPVSState,
        node_id="node-a",
        severity=FindingSeverity.Fixable,
        evidence=EMERGENCY_EVIDENCE,
    )

    outcomes = Remediator(cluster, runner, gate_config).remediate([finding])

    assert outcomes[0][1].status == OutcomeStatus.AlreadyCorrect
    assert not any("ipset" in c for c in runner.commands_for("node-a"))
    assert cluster.restarts == []
