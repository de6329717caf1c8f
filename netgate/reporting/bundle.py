"""Diagnostics bundle writer.

Every failed validation leaves a self-contained directory behind::

    <diagnostics_dir>/<timestamp>-attempt-<n>/
        node-<name>.txt        raw tool output per node
        cluster-summary.txt    kube-proxy / CoreDNS state and validation output
        snapshot.json          the full ClusterSnapshot
        findings.json          diagnoser output
        attempts.json          attempt log up to and including this attempt
        summary.md             human-readable summary
        environment.txt        where and how the gate ran

and a compressed copy at
``<archive_dir>/netgate-diagnostics-<timestamp>-attempt-<n>.tar.gz``.
"""

from __future__ import annotations

import logging
import platform
import socket
import sys
import tarfile
from pathlib import Path
from typing import Optional

from netgate import __version__
from netgate.config import GateConfig
from netgate.models import ClusterSnapshot, Finding, NodeState, RemediationAttempt, ValidationResult
from netgate.reporting.report import render_attempts
from netgate.tools.utils import utcnow_compact, write_json

logger = logging.getLogger("netgate.bundle")


def _node_text(state: NodeState) -> str:
    lines = [
        f"node: {state.name}",
        f"reachable: {state.reachable}",
        f"ip_forward_enabled: {state.ip_forward_enabled}",
        f"br_netfilter_loaded: {state.br_netfilter_loaded}",
        f"bridge_nf_call_iptables: {state.bridge_nf_call_iptables}",
        f"bridge_nf_call_ip6tables: {state.bridge_nf_call_ip6tables}",
        f"forward_chain_policy: {state.forward_chain_policy.value}",
        f"cni_forward_chains_present: {state.cni_forward_chains_present}",
        f"ipvs_modules_loaded: {state.ipvs_modules_loaded}",
        f"ipvs_table_entry_count: {state.ipvs_table_entry_count}",
        f"iptables_backend: {state.iptables_backend.value}",
    ]
    if state.errors:
        lines.append("")
        lines.append("errors:")
        lines.extend(f"  - {e}" for e in state.errors)
    for label, output in state.raw.items():
        lines.append("")
        lines.append(f"===== {label} =====")
        lines.append(output.rstrip())
    return "\n".join(lines) + "\n"


def _cluster_text(snapshot: Optional[ClusterSnapshot], validation: Optional[ValidationResult]) -> str:
    lines: list[str] = []
    if snapshot is not None:
        lines += [
            f"snapshot: {snapshot.timestamp}",
            f"partial: {snapshot.partial}",
            f"kube_proxy_mode: {snapshot.kube_proxy_mode.value}",
            f"service_cluster_cidr: {snapshot.service_cluster_cidr}",
            f"kube_proxy_configured_cidr: {snapshot.kube_proxy_configured_cidr}",
            f"coredns: {'ready' if snapshot.coredns_ready else 'NOT ready'} ({snapshot.coredns_status})",
            f"kube-proxy: {'ready' if snapshot.kube_proxy_ready else 'NOT ready'} ({snapshot.kube_proxy_status})",
        ]
        if snapshot.errors:
            lines.append("")
            lines.append("probe errors:")
            lines.extend(f"  - {e}" for e in snapshot.errors)
        if snapshot.kube_proxy_config_raw:
            lines += ["", "===== kube-proxy config.conf =====", snapshot.kube_proxy_config_raw.rstrip()]
    else:
        lines.append("snapshot: not collected")

    if validation is not None:
        reason = validation.reason.value if validation.reason else "-"
        lines += [
            "",
            f"===== validation ({validation.status.value}, reason={reason}, pod={validation.pod_name or '-'}) =====",
            validation.captured_output.rstrip(),
        ]
    return "\n".join(lines) + "\n"


def _environment_text(gate_config: GateConfig) -> str:
    return "\n".join([
        f"netgate: {__version__}",
        f"python: {sys.version.split()[0]}",
        f"platform: {platform.platform()}",
        f"host: {socket.gethostname()}",
        f"kubeconfig: {gate_config.kubeconfig or '(default)'}",
        f"context: {gate_config.context or '(current)'}",
        f"node_exec: {gate_config.node_exec}",
        f"namespace: {gate_config.namespace}",
        f"max_attempts: {gate_config.max_attempts}",
        f"emergency_clear_ipvs: {gate_config.emergency_clear_ipvs}",
    ]) + "\n"


def write_bundle(
    gate_config: GateConfig,
    attempt: RemediationAttempt,
    attempts: list[RemediationAttempt],
    snapshot: Optional[ClusterSnapshot],
    findings: list[Finding],
) -> Path:
    """Write the bundle for *attempt*, archive it, and return the archive path.

    *attempts* is the log so far; *attempt* is appended to it in the
    written ``attempts.json`` when it is not there already.
    """
    stamp = utcnow_compact()
    name = f"{stamp}-attempt-{attempt.attempt_number}"
    bundle_dir = Path(gate_config.diagnostics_dir) / name
    bundle_dir.mkdir(parents=True, exist_ok=True)

    log = list(attempts)
    if attempt not in log:
        log.append(attempt)

    if snapshot is not None:
        for node_name, state in snapshot.per_node.items():
            (bundle_dir / f"node-{node_name}.txt").write_text(_node_text(state), encoding="utf-8")
        write_json(snapshot.model_dump(mode="json"), bundle_dir / "snapshot.json")

    (bundle_dir / "cluster-summary.txt").write_text(
        _cluster_text(snapshot, attempt.validation), encoding="utf-8"
    )
    write_json([f.model_dump(mode="json") for f in findings], bundle_dir / "findings.json")
    write_json([a.model_dump(mode="json") for a in log], bundle_dir / "attempts.json")
    (bundle_dir / "summary.md").write_text(render_attempts(log), encoding="utf-8")
    (bundle_dir / "environment.txt").write_text(_environment_text(gate_config), encoding="utf-8")

    archive_dir = Path(gate_config.archive_dir)
    archive_dir.mkdir(parents=True, exist_ok=True)
    archive = archive_dir / f"netgate-diagnostics-{name}.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(bundle_dir, arcname=name)

    logger.info("Diagnostics for attempt %d archived to %s", attempt.attempt_number, archive)
    return archive
