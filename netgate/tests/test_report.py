"""
Tests for reporting/report.py - Markdown report and next-step guidance.
"""

from netgate.models import (
    ActionRecord,
    FailureReason,
    Finding,
    FindingKind,
    FindingSeverity,
    GateResult,
    GateState,
    Outcome,
    RemediationAttempt,
    ValidationResult,
    ValidationStatus,
)
from netgate.reporting.report import generate_report, next_steps, render_attempts


def _failed_attempt(n, findings, actions=()):
    return RemediationAttempt(
        attempt_number=n,
        validation_result=ValidationStatus.FAIL,
        validation=ValidationResult.fail(FailureReason.DNSResolutionFailed),
        findings=list(findings),
        actions_applied=list(actions),
        diagnostics_archive_path=f"archives/netgate-diagnostics-x-attempt-{n}.tar.gz",
    )


IPF = Finding(
    kind=FindingKind.IPForwardDisabled,
    node_id="node-a",
    severity=FindingSeverity.Fixable,
    evidence="net.ipv4.ip_forward = 0",
    suggested_fix="sysctl -w net.ipv4.ip_forward=1",
)
CONFLICT = Finding(
    kind=FindingKind.BackendConflict,
    severity=FindingSeverity.WarnOnly,
    evidence="iptables backends differ between nodes (legacy: node-b; nft: node-a)",
    suggested_fix="manual: pick one backend",
)


def test_next_steps_split_operator_and_exhausted():
    """Test WarnOnly and recurring Fixable findings get different guidance."""
    attempts = [
        _failed_attempt(1, [IPF, CONFLICT], [ActionRecord(kind=IPF.kind, node_id="node-a", outcome=Outcome.applied())]),
        _failed_attempt(2, [IPF, CONFLICT]),
    ]
    steps = next_steps(attempts)
    assert steps[0].startswith("Needs operator judgment: BackendConflict (cluster)")
    assert steps[1].startswith("Automation exhausted its retries: IPForwardDisabled (node-a)")
    assert len(steps) == 2


def test_no_guidance_after_success():
    """Test a passing final attempt leaves no next steps from earlier findings."""
    attempts = [
        _failed_attempt(1, [IPF]),
        RemediationAttempt(attempt_number=2, validation_result=ValidationStatus.PASS),
    ]
    assert next_steps(attempts) == []


def test_failure_report(tmp_path):
    """Test the failure report carries history, findings, outcomes, and archive path."""
    attempts = [
        _failed_attempt(1, [CONFLICT, IPF], [ActionRecord(kind=IPF.kind, node_id="node-a", outcome=Outcome.failed("exit 1"))]),
        _failed_attempt(2, [CONFLICT, IPF]),
    ]
    result = GateResult(
        state=GateState.DoneFailure,
        attempts=attempts,
        archive_path=attempts[-1].diagnostics_archive_path,
        reason="validation failed on all 2 attempt(s)",
    )

    path = generate_report(result, tmp_path / "out" / "report.md")
    text = path.read_text()

    assert "| **Result** | Done-Failure |" in text
    assert "Gate failed: validation failed on all 2 attempt(s)." in text
    assert "## Attempts" in text
    assert "| 1 | **FAIL** | DNSResolutionFailed |" in text
    assert "manual intervention required" in text
    assert "action IPForwardDisabled@node-a: Failed — exit 1" in text
    assert "netgate-diagnostics-x-attempt-2.tar.gz" in text
    assert "## Next Steps" in text


def test_bundle_summary_title():
    """Test the in-bundle summary renders with its own title."""
    text = render_attempts([_failed_attempt(1, [IPF])])
    assert text.startswith("# netgate Diagnostics Summary")
    assert "IPForwardDisabled@node-a" in text
