"""Report generator — human-readable summary of a gate run.

Used twice: inside every diagnostics bundle (``summary.md``, covering the
attempts so far) and as the final ``report.md`` written by the CLI.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from netgate.models import (
    Finding,
    FindingSeverity,
    GateResult,
    GateState,
    OutcomeStatus,
    RemediationAttempt,
    ValidationStatus,
)

logger = logging.getLogger("netgate.report")


# ---------------------------------------------------------------------------
# Guidance
# ---------------------------------------------------------------------------

def needs_operator(attempts: list[RemediationAttempt]) -> list[Finding]:
    """WarnOnly findings of a run whose final attempt failed, deduplicated."""
    last = _last_failed(attempts)
    if last is None:
        return []
    return _dedupe(f for f in last.findings if f.severity == FindingSeverity.WarnOnly)


def exhausted_fixes(attempts: list[RemediationAttempt]) -> list[Finding]:
    """Fixable findings still present when the final attempt failed."""
    last = _last_failed(attempts)
    if last is None:
        return []
    return _dedupe(f for f in last.findings if f.severity == FindingSeverity.Fixable)


def next_steps(attempts: list[RemediationAttempt]) -> list[str]:
    steps: list[str] = []
    for f in needs_operator(attempts):
        steps.append(f"Needs operator judgment: {f.kind.value} ({f.scope}) — {f.suggested_fix}")
    for f in exhausted_fixes(attempts):
        steps.append(
            f"Automation exhausted its retries: {f.kind.value} ({f.scope}) kept recurring — "
            f"apply manually: {f.suggested_fix}"
        )
    return steps


def _last_failed(attempts: list[RemediationAttempt]) -> Optional[RemediationAttempt]:
    """The final attempt, if it failed. A run that ended in PASS needs no guidance."""
    if attempts and attempts[-1].validation_result == ValidationStatus.FAIL:
        return attempts[-1]
    return None


def _dedupe(findings) -> list[Finding]:
    seen: set[tuple[str, str]] = set()
    out: list[Finding] = []
    for f in findings:
        key = (f.kind.value, f.scope)
        if key not in seen:
            seen.add(key)
            out.append(f)
    return out


# ---------------------------------------------------------------------------
# Markdown sections
# ---------------------------------------------------------------------------

def _cell(text: str, limit: int = 120) -> str:
    return text.replace("|", "\\|").replace("\n", " ")[:limit]


def _attempts_table(attempts: list[RemediationAttempt]) -> str:
    if not attempts:
        return "\n## Attempts\n\nNo attempt was made.\n"
    lines = [
        "\n## Attempts\n",
        "| # | Validation | Reason | Findings | Actions | Archive |",
        "|---|------------|--------|----------|---------|---------|",
    ]
    for a in attempts:
        reason = a.validation.reason.value if a.validation and a.validation.reason else ""
        findings = ", ".join(f"{f.kind.value}@{f.scope}" for f in a.findings) or "-"
        actions = ", ".join(
            f"{r.kind.value}@{r.node_id or 'cluster'}={r.outcome.status.value}" for r in a.actions_applied
        ) or "-"
        lines.append(
            f"| {a.attempt_number} | **{a.validation_result.value}** | {reason} | "
            f"{_cell(findings)} | {_cell(actions)} | {a.diagnostics_archive_path or '-'} |"
        )
    return "\n".join(lines) + "\n"


def _findings_section(attempts: list[RemediationAttempt]) -> str:
    lines: list[str] = []
    for a in attempts:
        if not a.findings:
            continue
        lines.append(f"\n### Attempt {a.attempt_number}\n")
        for f in a.findings:
            flag = " **(manual intervention required)**" if f.severity == FindingSeverity.WarnOnly else ""
            first_line = f.evidence.splitlines()[0] if f.evidence else ""
            lines.append(f"- `{f.kind.value}` on {f.scope} [{f.severity.value}]{flag}: {_cell(first_line, 300)}")
        for r in a.actions_applied:
            detail = r.outcome.error if r.outcome.status == OutcomeStatus.Failed else r.outcome.detail
            lines.append(f"  - action {r.kind.value}@{r.node_id or 'cluster'}: {r.outcome.status.value} — {detail}")
    if not lines:
        return ""
    return "\n## Findings & Remediation\n" + "\n".join(lines) + "\n"


def _body(attempts: list[RemediationAttempt]) -> str:
    parts = [_attempts_table(attempts), _findings_section(attempts)]
    steps = next_steps(attempts)
    if steps:
        parts.append("\n## Next Steps\n\n" + "\n".join(f"- {s}" for s in steps) + "\n")
    return "".join(parts)


def render_attempts(attempts: list[RemediationAttempt]) -> str:
    """Summary for an in-progress run (used inside every bundle)."""
    return "# netgate Diagnostics Summary\n" + _body(attempts)


def render_report(result: GateResult) -> str:
    if result.state == GateState.DoneSuccess:
        remediated = [
            r for a in result.attempts for r in a.actions_applied
            if r.outcome.status == OutcomeStatus.Applied
        ]
        if remediated:
            what = ", ".join(f"{r.kind.value}@{r.node_id or 'cluster'}" for r in remediated)
            verdict = f"Validation passed on attempt {result.successful_attempt} after remediating: {what}."
        else:
            verdict = f"Validation passed on attempt {result.successful_attempt}; nothing was remediated."
    else:
        verdict = f"Gate failed: {result.reason or 'validation never passed'}."
        if result.cancelled:
            verdict += " The run was cancelled."

    header = (
        f"# netgate Report\n\n"
        f"| Field | Value |\n"
        f"|-------|-------|\n"
        f"| **Result** | {result.state.value} |\n"
        f"| **Attempts** | {len(result.attempts)} |\n"
        f"| **Diagnostics archive** | {result.archive_path or '-'} |\n"
        f"\n{verdict}\n"
    )
    return header + _body(result.attempts)


def generate_report(result: GateResult, out_path: str | Path) -> Path:
    path = Path(out_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_report(result), encoding="utf-8")
    logger.info("Report written to %s", path)
    return path
