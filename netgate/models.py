"""Shared Pydantic models for netgate.

Every component imports from here to keep the snapshot, finding, and
attempt-log definitions in one place. ``None`` on a boolean or integer
field means *unknown*: the query that would have filled it failed.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from netgate.tools.utils import utcnow_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class KubeProxyMode(str, Enum):
    iptables = "iptables"
    ipvs = "ipvs"
    unknown = "unknown"


class ForwardPolicy(str, Enum):
    ACCEPT = "ACCEPT"
    DROP = "DROP"
    REJECT = "REJECT"
    unknown = "unknown"


class IptablesBackend(str, Enum):
    legacy = "legacy"
    nft = "nft"
    unknown = "unknown"


class FindingKind(str, Enum):
    """Fault classes the diagnoser can emit, in decision-table order."""
    IPForwardDisabled = "IPForwardDisabled"
    BrNetfilterMissing = "BrNetfilterMissing"
    ForwardPolicyBlocking = "ForwardPolicyBlocking"
    StaleIPVSState = "StaleIPVSState"
    ServiceCIDRMismatch = "ServiceCIDRMismatch"
    BackendConflict = "BackendConflict"
    Unknown = "Unknown"


class FindingSeverity(str, Enum):
    Fixable = "Fixable"
    WarnOnly = "WarnOnly"


class OutcomeStatus(str, Enum):
    Applied = "Applied"
    AlreadyCorrect = "AlreadyCorrect"
    Failed = "Failed"


class ValidationStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class FailureReason(str, Enum):
    DNSResolutionFailed = "DNSResolutionFailed"
    ConnectFailed = "ConnectFailed"
    Timeout = "Timeout"
    WorkloadSchedulingFailed = "WorkloadSchedulingFailed"
    APIUnreachable = "APIUnreachable"
    Cancelled = "Cancelled"


class GateState(str, Enum):
    """Controller states; the two ``Done*`` states are terminal."""
    Idle = "Idle"
    Validating = "Validating"
    Probing = "Probing"
    Diagnosing = "Diagnosing"
    Remediating = "Remediating"
    DoneSuccess = "Done-Success"
    DoneFailure = "Done-Failure"


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

class NodeState(BaseModel):
    """Network-relevant kernel and netfilter state of one node."""
    model_config = ConfigDict(frozen=True)

    name: str
    reachable: bool = True
    ip_forward_enabled: Optional[bool] = None
    br_netfilter_loaded: Optional[bool] = None
    bridge_nf_call_iptables: Optional[bool] = None
    bridge_nf_call_ip6tables: Optional[bool] = None
    forward_chain_policy: ForwardPolicy = ForwardPolicy.unknown
    cni_forward_chains_present: Optional[bool] = None
    ipvs_modules_loaded: Optional[bool] = None
    ipvs_table_entry_count: Optional[int] = None
    iptables_backend: IptablesBackend = IptablesBackend.unknown
    errors: list[str] = Field(default_factory=list)
    raw: dict[str, str] = Field(default_factory=dict, description="Raw tool output per query")

    @classmethod
    def unreachable(cls, name: str, reason: str) -> "NodeState":
        """A node we could not talk to: every field stays unknown."""
        return cls(name=name, reachable=False, errors=[reason])

    def missing_evidence(self) -> list[str]:
        """Names of the fields the diagnoser could not evaluate."""
        fields = (
            "ip_forward_enabled",
            "br_netfilter_loaded",
            "bridge_nf_call_iptables",
            "bridge_nf_call_ip6tables",
            "cni_forward_chains_present",
            "ipvs_modules_loaded",
        )
        missing = [f for f in fields if getattr(self, f) is None]
        if self.forward_chain_policy == ForwardPolicy.unknown:
            missing.append("forward_chain_policy")
        if self.iptables_backend == IptablesBackend.unknown:
            missing.append("iptables_backend")
        return missing


class ClusterSnapshot(BaseModel):
    """Point-in-time view of cluster networking; never mutated once built."""
    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(default_factory=utcnow_iso)
    per_node: dict[str, NodeState] = Field(default_factory=dict)
    kube_proxy_mode: KubeProxyMode = KubeProxyMode.unknown
    service_cluster_cidr: Optional[str] = None
    kube_proxy_configured_cidr: Optional[str] = None
    coredns_ready: bool = False
    kube_proxy_ready: bool = False
    coredns_status: str = "unknown"
    kube_proxy_status: str = "unknown"
    kube_proxy_config_raw: str = ""
    partial: bool = False
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Diagnosis & remediation
# ---------------------------------------------------------------------------

class Finding(BaseModel):
    """One diagnosed fault. ``node_id`` is ``None`` for cluster-scope faults."""
    model_config = ConfigDict(frozen=True)

    kind: FindingKind
    node_id: Optional[str] = None
    severity: FindingSeverity
    evidence: str = ""
    suggested_fix: str = ""

    @property
    def scope(self) -> str:
        return self.node_id or "cluster"


class Outcome(BaseModel):
    status: OutcomeStatus
    detail: str = ""
    error: Optional[str] = None

    @classmethod
    def applied(cls, detail: str = "") -> "Outcome":
        return cls(status=OutcomeStatus.Applied, detail=detail)

    @classmethod
    def already_correct(cls, detail: str = "") -> "Outcome":
        return cls(status=OutcomeStatus.AlreadyCorrect, detail=detail)

    @classmethod
    def failed(cls, error: str) -> "Outcome":
        return cls(status=OutcomeStatus.Failed, error=error)


class ActionRecord(BaseModel):
    """``(Finding.kind, nodeID, outcome)`` entry of an attempt's action log."""
    kind: FindingKind
    node_id: Optional[str] = None
    outcome: Outcome


class ValidationResult(BaseModel):
    status: ValidationStatus
    reason: Optional[FailureReason] = None
    captured_output: str = ""
    pod_name: str = ""

    @property
    def passed(self) -> bool:
        return self.status == ValidationStatus.PASS

    @classmethod
    def ok(cls, output: str = "", pod_name: str = "") -> "ValidationResult":
        return cls(status=ValidationStatus.PASS, captured_output=output, pod_name=pod_name)

    @classmethod
    def fail(cls, reason: FailureReason, output: str = "", pod_name: str = "") -> "ValidationResult":
        return cls(
            status=ValidationStatus.FAIL,
            reason=reason,
            captured_output=output,
            pod_name=pod_name,
        )


# ---------------------------------------------------------------------------
# Attempt log & gate result
# ---------------------------------------------------------------------------

class RemediationAttempt(BaseModel):
    """Append-only log entry, one per controller loop iteration."""
    attempt_number: int
    validation_result: ValidationStatus
    validation: Optional[ValidationResult] = None
    findings: list[Finding] = Field(default_factory=list)
    actions_applied: list[ActionRecord] = Field(default_factory=list)
    diagnostics_archive_path: Optional[str] = None
    started_at: str = Field(default_factory=utcnow_iso)
    finished_at: str = ""


class GateResult(BaseModel):
    state: GateState
    attempts: list[RemediationAttempt] = Field(default_factory=list)
    archive_path: Optional[str] = None
    reason: str = ""
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state == GateState.DoneSuccess

    @property
    def successful_attempt(self) -> Optional[int]:
        for attempt in self.attempts:
            if attempt.validation_result == ValidationStatus.PASS:
                return attempt.attempt_number
        return None
