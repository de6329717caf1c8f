"""Remediator — applies the corrective action for each Fixable finding.

**Safety**: WarnOnly findings (backend conflicts, undiagnosed failures) are
never acted on. The FORWARD policy is never flipped by hand; its owners
(the CNI daemon and kube-proxy) are restarted so they reprogram it.
Restarted CNI pods are waited on until Ready, bounded by
``rollout_timeout``.

Every action re-reads live state first and reports ``AlreadyCorrect``
without touching anything when the fix is already in effect, so running
the same findings twice is safe.

Ordering: node-local actions run first, one worker per node and
sequentially within a node. Cluster-wide actions (the kube-proxy
ConfigMap patch and the kube-proxy restart) run afterwards, one at a time,
each waiting for its rollout before the next starts. kube-proxy is
restarted at most once per pass.

Usage::

    from netgate.agents.remediator import Remediator
    outcomes = Remediator(cluster, runner, gate_config).remediate(findings)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from netgate import config
from netgate.agents.probe import read_service_cidr
from netgate.config import GateConfig
from netgate.models import Finding, FindingKind, FindingSeverity, ForwardPolicy, Outcome, OutcomeStatus
from netgate.tools import parsers
from netgate.tools.k8s_connector import ClusterClient
from netgate.tools.node_exec import NodeRunner
from netgate.tools.utils import utcnow_compact, write_json

logger = logging.getLogger("netgate.remediator")

BRIDGE_SYSCTLS = (
    "net.bridge.bridge-nf-call-iptables",
    "net.bridge.bridge-nf-call-ip6tables",
)

EMERGENCY_EVIDENCE = "emergency IPVS clear requested by operator"
EMERGENCY_CLEAR_COMMAND = (
    "ipvsadm --clear; "
    "for s in $(ipset list -n 2>/dev/null | grep '^KUBE-'); do ipset flush \"$s\"; done"
)


class _NodeResult:
    """Outcome of a node action plus whether it needs kube-proxy restarted."""

    __slots__ = ("outcome", "needs_kube_proxy_restart")

    def __init__(self, outcome: Outcome, needs_kube_proxy_restart: bool = False) -> None:
        self.outcome = outcome
        self.needs_kube_proxy_restart = needs_kube_proxy_restart


class Remediator:
    def __init__(
        self,
        cluster: ClusterClient,
        runner: NodeRunner,
        gate_config: GateConfig,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.cluster = cluster
        self.runner = runner
        self.config = gate_config
        self.cancel = cancel
        self._node_handlers: dict[FindingKind, Callable[[Finding], _NodeResult]] = {
            FindingKind.IPForwardDisabled: self._fix_ip_forward,
            FindingKind.BrNetfilterMissing: self._fix_br_netfilter,
            FindingKind.ForwardPolicyBlocking: self._fix_forward_policy,
            FindingKind.StaleIPVSState: self._fix_stale_ipvs,
        }

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def remediate(
        self,
        findings: list[Finding],
        emergency_clear: bool = False,
    ) -> list[tuple[Finding, Outcome]]:
        """Apply every Fixable finding; return ``(finding, outcome)`` in input order.

        Action failures are caught and reported as ``Failed``; they never
        stop the remaining actions.
        """
        actionable: list[Finding] = []
        for f in findings:
            if f.severity == FindingSeverity.WarnOnly:
                logger.warning("Not remediating %s@%s (needs operator action)", f.kind.value, f.scope)
                continue
            actionable.append(f)

        handlers: dict[int, Callable[[Finding], _NodeResult]] = {
            i: self._node_handlers[f.kind]
            for i, f in enumerate(actionable)
            if f.kind in self._node_handlers and f.node_id
        }

        if emergency_clear:
            try:
                emergency = self._emergency_findings()
            except Exception as exc:
                logger.error("Emergency IPVS clear skipped, cannot list nodes: %s", exc)
                emergency = []
            for f in emergency:
                handlers[len(actionable)] = self._emergency_clear
                actionable.append(f)

        results: dict[int, _NodeResult] = {}

        # 1. node-local actions, nodes in parallel
        by_node: dict[str, list[int]] = {}
        for i in handlers:
            by_node.setdefault(actionable[i].node_id, []).append(i)

        if by_node:
            workers = min(len(by_node), self.config.max_workers)
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {
                    node: pool.submit(self._run_node_actions, [(actionable[i], handlers[i]) for i in idxs])
                    for node, idxs in by_node.items()
                }
                for node, future in futures.items():
                    for i, res in zip(by_node[node], future.result()):
                        results[i] = res

        # 2. cluster-wide actions, serialized
        kube_proxy_restarted = False
        for i, f in enumerate(actionable):
            if f.kind == FindingKind.ServiceCIDRMismatch:
                res = self._guard(f, self._fix_service_cidr)
                results[i] = res
                if res.outcome.status == OutcomeStatus.Applied:
                    kube_proxy_restarted = True
            elif i not in results:
                results[i] = _NodeResult(Outcome.failed(f"no automated action for {f.kind.value}"))

        pending = [i for i, r in results.items() if r.needs_kube_proxy_restart]
        if pending and not kube_proxy_restarted:
            try:
                self._restart_kube_proxy()
            except Exception as exc:
                logger.error("kube-proxy restart failed: %s", exc)
                for i in pending:
                    prior = results[i].outcome.detail
                    results[i] = _NodeResult(
                        Outcome.failed(f"{prior}; kube-proxy restart failed: {exc}".lstrip("; "))
                    )

        outcomes = [(f, results[i].outcome) for i, f in enumerate(actionable)]
        for f, outcome in outcomes:
            logger.info("%s@%s -> %s %s", f.kind.value, f.scope, outcome.status.value, outcome.error or outcome.detail)
        return outcomes

    # ------------------------------------------------------------------
    # Dispatch helpers
    # ------------------------------------------------------------------

    def _run_node_actions(
        self, jobs: list[tuple[Finding, Callable[[Finding], _NodeResult]]]
    ) -> list[_NodeResult]:
        return [self._guard(f, handler) for f, handler in jobs]

    @staticmethod
    def _guard(finding: Finding, handler: Callable[[Finding], _NodeResult]) -> _NodeResult:
        try:
            return handler(finding)
        except Exception as exc:
            logger.error(
                "Remediation %s@%s failed: %s (evidence: %s)",
                finding.kind.value, finding.scope, exc, finding.evidence[:300],
            )
            return _NodeResult(Outcome.failed(str(exc)))

    # ------------------------------------------------------------------
    # Node helpers
    # ------------------------------------------------------------------

    def _sysctl_is_on(self, node: str, key: str) -> bool:
        result = self.runner.run(node, f"sysctl -n {key}")
        return result.ok and parsers.parse_sysctl_bool(result.stdout) is True

    def _is_persisted(self, node: str, path: str, line: str) -> bool:
        return self.runner.run(node, f"grep -qxF '{line}' {path}").ok

    def _persist(self, node: str, path: str, line: str) -> None:
        directory = path.rsplit("/", 1)[0]
        self.runner.check(
            node, f"mkdir -p {directory} && (grep -qxF '{line}' {path} || echo '{line}' >> {path})"
        )

    def _loaded_modules(self, node: str) -> set[str]:
        return parsers.parse_lsmod(self.runner.check(node, "lsmod").stdout)

    # ------------------------------------------------------------------
    # Node actions
    # ------------------------------------------------------------------

    def _fix_ip_forward(self, finding: Finding) -> _NodeResult:
        node = finding.node_id
        key = "net.ipv4.ip_forward"
        line = f"{key} = 1"
        live = self._sysctl_is_on(node, key)
        persisted = self._is_persisted(node, config.SYSCTL_PERSIST_FILE, line)
        if live and persisted:
            return _NodeResult(Outcome.already_correct(f"{key} already 1 and persisted"))

        if not persisted:
            self._persist(node, config.SYSCTL_PERSIST_FILE, line)
        if not live:
            self.runner.check(node, f"sysctl -w {key}=1")
            if not self._sysctl_is_on(node, key):
                return _NodeResult(Outcome.failed(f"{key} still 0 after sysctl -w"))
        return _NodeResult(Outcome.applied(f"{key}=1 set and persisted in {config.SYSCTL_PERSIST_FILE}"))

    def _fix_br_netfilter(self, finding: Finding) -> _NodeResult:
        node = finding.node_id
        loaded = "br_netfilter" in self._loaded_modules(node)
        modules_persisted = all(
            self._is_persisted(node, config.MODULES_PERSIST_FILE, m) for m in config.BRIDGE_MODULES
        )
        sysctls_on = {key: self._sysctl_is_on(node, key) for key in BRIDGE_SYSCTLS} if loaded else {}
        sysctls_persisted = all(
            self._is_persisted(node, config.SYSCTL_PERSIST_FILE, f"{key} = 1") for key in BRIDGE_SYSCTLS
        )
        if loaded and modules_persisted and all(sysctls_on.values()) and sysctls_persisted:
            return _NodeResult(Outcome.already_correct("br_netfilter loaded, bridge-nf-call sysctls on and persisted"))

        done: list[str] = []
        if not loaded:
            self.runner.check(node, "modprobe br_netfilter")
            done.append("loaded br_netfilter")
            # overlay may be built in; modprobe is a no-op then
            if not self.runner.run(node, "modprobe overlay").ok:
                logger.warning("[%s] modprobe overlay failed; continuing", node)
        for module in config.BRIDGE_MODULES:
            if not self._is_persisted(node, config.MODULES_PERSIST_FILE, module):
                self._persist(node, config.MODULES_PERSIST_FILE, module)
                done.append(f"persisted {module}")
        for key in BRIDGE_SYSCTLS:
            if not sysctls_on.get(key):
                self.runner.check(node, f"sysctl -w {key}=1")
                done.append(f"{key}=1")
            if not self._is_persisted(node, config.SYSCTL_PERSIST_FILE, f"{key} = 1"):
                self._persist(node, config.SYSCTL_PERSIST_FILE, f"{key} = 1")
        return _NodeResult(Outcome.applied(", ".join(done) or "persisted bridge sysctls"))

    def _fix_forward_policy(self, finding: Finding) -> _NodeResult:
        node = finding.node_id
        dump = self.runner.check(node, "iptables -t filter -S FORWARD").stdout
        policy, chains_present = parsers.parse_forward_chain(dump)
        if policy != ForwardPolicy.DROP or chains_present:
            return _NodeResult(Outcome.already_correct(f"FORWARD policy {policy.value}, accept chains present={chains_present}"))

        restarted: list[str] = []
        for selector in self.config.cni_selectors:
            count = self.cluster.delete_pods(config.KUBE_SYSTEM, selector, node)
            if not count:
                continue
            self.cluster.wait_for_pods_ready(
                config.KUBE_SYSTEM,
                selector,
                node,
                timeout=self.config.rollout_timeout,
                poll_interval=self.config.poll_interval,
                cancel=self.cancel,
            )
            restarted.append(f"{count} {selector} pod(s)")
        if not restarted:
            logger.warning("[%s] no CNI daemon pod found for selectors %s", node, self.config.cni_selectors)
            detail = f"no CNI daemon pod on {node} matched {', '.join(self.config.cni_selectors)}; only kube-proxy restart queued"
        else:
            detail = f"restarted {', '.join(restarted)} on {node} and waited for Ready; kube-proxy restart queued"
        return _NodeResult(Outcome.applied(detail), needs_kube_proxy_restart=True)

    def _fix_stale_ipvs(self, finding: Finding) -> _NodeResult:
        node = finding.node_id
        result = self.runner.run(node, "ipvsadm -Ln")
        if result.ok and parsers.count_ipvs_services(result.stdout) == 0:
            return _NodeResult(Outcome.already_correct("IPVS table already empty"))
        self.runner.check(node, "ipvsadm --clear")
        return _NodeResult(
            Outcome.applied(f"flushed IPVS table on {node}; kube-proxy restart queued"),
            needs_kube_proxy_restart=True,
        )

    def _emergency_clear(self, finding: Finding) -> _NodeResult:
        self.runner.check(finding.node_id, EMERGENCY_CLEAR_COMMAND)
        return _NodeResult(
            Outcome.applied("emergency IPVS/ipset clear"),
            needs_kube_proxy_restart=True,
        )

    def _emergency_findings(self) -> list[Finding]:
        """Operator-requested global IPVS/ipset clear, one finding per node."""
        nodes = self.config.nodes or self.cluster.list_node_names()
        logger.warning("Emergency IPVS/ipset clear requested for %d node(s)", len(nodes))
        return [
            Finding(
                kind=FindingKind.StaleIPVSState,
                node_id=node,
                severity=FindingSeverity.Fixable,
                evidence=EMERGENCY_EVIDENCE,
                suggested_fix=EMERGENCY_CLEAR_COMMAND,
            )
            for node in nodes
        ]

    # ------------------------------------------------------------------
    # Cluster actions
    # ------------------------------------------------------------------

    def _fix_service_cidr(self, finding: Finding) -> _NodeResult:
        target = read_service_cidr(self.cluster, self.config)
        if not target:
            return _NodeResult(Outcome.failed("cannot determine kube-apiserver service range"))

        data = self.cluster.read_configmap(config.KUBE_SYSTEM, config.KUBE_PROXY_CONFIGMAP)
        conf = data.get(config.KUBE_PROXY_CONFIG_KEY, "")
        _, current = parsers.parse_kube_proxy_config(conf)
        if current == target:
            return _NodeResult(Outcome.already_correct(f"kube-proxy clusterCIDR already {target}"))

        backup = self._backup_kube_proxy_configmap()
        self.cluster.patch_configmap_data(
            config.KUBE_SYSTEM,
            config.KUBE_PROXY_CONFIGMAP,
            {config.KUBE_PROXY_CONFIG_KEY: parsers.replace_cluster_cidr(conf, target)},
        )
        logger.info("Patched kube-proxy clusterCIDR %s -> %s (backup %s)", current, target, backup)
        self._restart_kube_proxy()
        return _NodeResult(Outcome.applied(f"clusterCIDR {current} -> {target}; backup {backup}"))

    def _backup_kube_proxy_configmap(self) -> Path:
        manifest = self.cluster.configmap_manifest(config.KUBE_SYSTEM, config.KUBE_PROXY_CONFIGMAP)
        path = Path(self.config.backup_dir) / f"kube-proxy-configmap-{utcnow_compact()}.json"
        return write_json(manifest, path)

    def _restart_kube_proxy(self) -> None:
        """Rolling restart of kube-proxy, returning only once the rollout is done."""
        logger.info("Restarting kube-proxy DaemonSet")
        self.cluster.restart_daemonset(config.KUBE_SYSTEM, config.KUBE_PROXY_DAEMONSET)
        self.cluster.wait_for_rollout(
            config.KUBE_SYSTEM,
            config.KUBE_PROXY_DAEMONSET,
            timeout=self.config.rollout_timeout,
            poll_interval=self.config.poll_interval,
            cancel=self.cancel,
        )
