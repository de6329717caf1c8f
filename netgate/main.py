"""netgate CLI — ``netgate run`` gate orchestrator.

Pipeline::

    validate → (FAIL) probe → diagnose → archive → remediate → validate …

Usage::

    python -m netgate.main run --kubeconfig ~/.kube/config --report report.md
    python -m netgate.main probe --output snapshot.json
    python -m netgate.main diagnose snapshot.json
    python -m netgate.main validate --namespace default
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional

import typer
from rich.table import Table

from netgate import __version__
from netgate.config import GateConfig, load_config
from netgate.errors import ClusterUnreachableError, ConfigError, GateLockedError
from netgate.models import (
    ClusterSnapshot,
    Finding,
    FindingSeverity,
    GateResult,
    GateState,
    OutcomeStatus,
)
from netgate.tools.utils import console, read_json, rprint, write_json

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_LOCKED = 3
EXIT_CANCELLED = 130

# ---------------------------------------------------------------------------
# Typer application
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="netgate",
    help="netgate — Kubernetes network remediation gate",
    add_completion=False,
)

logger = logging.getLogger("netgate")

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def _setup_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
    )
    # the kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _load(config_file: Optional[str], **overrides: Any) -> GateConfig:
    try:
        return load_config(config_file, **overrides)
    except ConfigError as exc:
        rprint(f"[bold red]Configuration error:[/bold red] {exc}")
        sys.exit(EXIT_FAILURE)


def _connect(gate_config: GateConfig):
    from netgate.tools.k8s_connector import ClusterClient

    cluster = ClusterClient.connect(gate_config.kubeconfig, gate_config.context)
    cluster.ping()
    return cluster


def _install_signal_handlers(cancel: threading.Event) -> None:
    def _handler(signum: int, _frame: Any) -> None:
        logger.warning("Received %s, cancelling at the next safe point", signal.Signals(signum).name)
        cancel.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _exit_code(result: GateResult) -> int:
    if result.succeeded:
        return EXIT_OK
    if result.cancelled:
        return EXIT_CANCELLED
    return EXIT_FAILURE


def _findings_table(findings: list[Finding], title: str = "Findings") -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Kind", style="cyan")
    table.add_column("Scope")
    table.add_column("Severity")
    table.add_column("Suggested fix", overflow="fold")
    for f in findings:
        sev_style = "yellow" if f.severity == FindingSeverity.WarnOnly else "green"
        table.add_row(f.kind.value, f.scope, f"[{sev_style}]{f.severity.value}[/{sev_style}]", f.suggested_fix)
    return table


def _display_result(result: GateResult) -> None:
    table = Table(title="Gate Attempts", show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Validation")
    table.add_column("Reason")
    table.add_column("Findings", justify="right")
    table.add_column("Applied", justify="right")
    table.add_column("Failed", justify="right")
    for a in result.attempts:
        colour = "green" if a.validation_result.value == "PASS" else "red"
        reason = a.validation.reason.value if a.validation and a.validation.reason else ""
        applied = sum(1 for r in a.actions_applied if r.outcome.status == OutcomeStatus.Applied)
        failed = sum(1 for r in a.actions_applied if r.outcome.status == OutcomeStatus.Failed)
        table.add_row(
            str(a.attempt_number),
            f"[{colour}]{a.validation_result.value}[/{colour}]",
            reason,
            str(len(a.findings)),
            str(applied),
            str(failed),
        )
    console.print()
    console.print(table)

    if result.state == GateState.DoneSuccess:
        rprint(f"\n[bold green]✔ Gate passed[/bold green] on attempt {result.successful_attempt}")
    else:
        rprint(f"\n[bold red]✘ Gate failed:[/bold red] {result.reason}")
    if result.archive_path:
        rprint(f"  Diagnostics: [cyan]{result.archive_path}[/cyan]")


# ---------------------------------------------------------------------------
# run: the primary command
# ---------------------------------------------------------------------------

@app.command()
def run(
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", "-k", help="Path to kubeconfig file."),
    context: Optional[str] = typer.Option(None, "--context", help="kubeconfig context to use."),
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="YAML file with gate options."),
    namespace: Optional[str] = typer.Option(None, "--namespace", "-n", help="Namespace for the validation pod."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Validation timeout in seconds."),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts", help="Maximum validations (default 3)."),
    inter_attempt_delay: Optional[float] = typer.Option(
        None, "--inter-attempt-delay", help="Seconds to wait before each remediation pass."
    ),
    diagnostics_dir: Optional[Path] = typer.Option(None, "--diagnostics-dir", help="Where bundles are written."),
    archive_dir: Optional[Path] = typer.Option(None, "--archive-dir", help="Where .tar.gz archives are written."),
    emergency_clear_ipvs: Optional[bool] = typer.Option(
        None,
        "--emergency-clear-ipvs/--no-emergency-clear-ipvs",
        help="Flush IPVS and KUBE-* ipsets on every node on the first remediation pass.",
    ),
    node_exec: Optional[str] = typer.Option(None, "--node-exec", help="Node command channel: pod or ssh."),
    node: Optional[list[str]] = typer.Option(None, "--node", help="Restrict to node(s). Repeat for multiple."),
    report: Optional[str] = typer.Option(None, "--report", "-o", help="Write a Markdown report to this path."),
    json_out: bool = typer.Option(False, "--json", help="Print the GateResult JSON on stdout."),
    debug: bool = typer.Option(False, "--debug", help="Enable DEBUG logging."),
) -> None:
    """Validate cluster networking; diagnose and remediate until it passes or attempts run out."""
    _setup_logging(debug)
    gate_config = _load(
        config_file,
        kubeconfig=kubeconfig,
        context=context,
        namespace=namespace,
        timeout=timeout,
        max_attempts=max_attempts,
        inter_attempt_delay=inter_attempt_delay,
        diagnostics_dir=diagnostics_dir,
        archive_dir=archive_dir,
        emergency_clear_ipvs=emergency_clear_ipvs,
        node_exec=node_exec,
        nodes=node or None,
    )

    from netgate.agents.controller import GateController
    from netgate.reporting.report import generate_report
    from netgate.tools.node_exec import build_runner

    cancel = threading.Event()
    _install_signal_handlers(cancel)

    rprint("[bold cyan]▶ Running network gate…[/bold cyan]")
    try:
        cluster = _connect(gate_config)
    except ClusterUnreachableError as exc:
        logger.error("Precondition failed: %s", exc)
        result = GateResult(state=GateState.DoneFailure, reason=str(exc))
    else:
        controller = GateController(cluster, build_runner(cluster, gate_config), gate_config, cancel)
        try:
            result = controller.run()
        except GateLockedError as exc:
            rprint(f"[bold red]Locked:[/bold red] {exc}")
            sys.exit(EXIT_LOCKED)

    if report:
        path = generate_report(result, report)
        rprint(f"  Report written to [cyan]{path}[/cyan]")
    _display_result(result)
    if json_out:
        typer.echo(result.model_dump_json(indent=2))
    sys.exit(_exit_code(result))


# ---------------------------------------------------------------------------
# probe, diagnose, validate: single-phase commands
# ---------------------------------------------------------------------------

@app.command()
def probe(
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", "-k", help="Path to kubeconfig file."),
    context: Optional[str] = typer.Option(None, "--context", help="kubeconfig context to use."),
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="YAML file with gate options."),
    node_exec: Optional[str] = typer.Option(None, "--node-exec", help="Node command channel: pod or ssh."),
    node: Optional[list[str]] = typer.Option(None, "--node", help="Restrict to node(s). Repeat for multiple."),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Save the snapshot JSON here."),
    debug: bool = typer.Option(False, "--debug", help="Enable DEBUG logging."),
) -> None:
    """Collect a network snapshot without changing anything."""
    _setup_logging(debug)
    gate_config = _load(config_file, kubeconfig=kubeconfig, context=context, node_exec=node_exec, nodes=node or None)

    from netgate.agents.probe import ClusterProbe
    from netgate.tools.node_exec import build_runner

    try:
        cluster = _connect(gate_config)
    except ClusterUnreachableError as exc:
        rprint(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(EXIT_FAILURE)

    snapshot = ClusterProbe(cluster, build_runner(cluster, gate_config), gate_config).probe()
    if output:
        write_json(snapshot.model_dump(mode="json"), output)
        rprint(f"  Snapshot saved to [cyan]{output}[/cyan]")
    else:
        typer.echo(snapshot.model_dump_json(indent=2))

    table = Table(title="Nodes", show_header=True, header_style="bold magenta")
    for column in ("Node", "Reachable", "ip_forward", "br_netfilter", "FORWARD", "IPVS entries", "Backend"):
        table.add_column(column)
    for state in snapshot.per_node.values():
        table.add_row(
            state.name,
            str(state.reachable),
            str(state.ip_forward_enabled),
            str(state.br_netfilter_loaded),
            state.forward_chain_policy.value,
            str(state.ipvs_table_entry_count),
            state.iptables_backend.value,
        )
    console.print(table)
    rprint(
        f"  kube-proxy mode: {snapshot.kube_proxy_mode.value}  "
        f"service CIDR: {snapshot.service_cluster_cidr}  "
        f"kube-proxy CIDR: {snapshot.kube_proxy_configured_cidr}  partial: {snapshot.partial}"
    )


@app.command()
def diagnose(
    snapshot_file: str = typer.Argument(..., help="Snapshot JSON written by `netgate probe`."),
    json_out: bool = typer.Option(False, "--json", help="Print the findings JSON on stdout."),
    debug: bool = typer.Option(False, "--debug", help="Enable DEBUG logging."),
) -> None:
    """Run the decision table over a saved snapshot (offline)."""
    _setup_logging(debug)
    from netgate.agents.diagnoser import diagnose as run_diagnosis

    try:
        snapshot = ClusterSnapshot.model_validate(read_json(snapshot_file))
    except (OSError, ValueError) as exc:
        rprint(f"[bold red]Cannot read snapshot:[/bold red] {exc}")
        sys.exit(EXIT_FAILURE)

    findings = run_diagnosis(snapshot)
    if json_out:
        typer.echo(f"[{', '.join(f.model_dump_json() for f in findings)}]")
    console.print(_findings_table(findings))


@app.command()
def validate(
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", "-k", help="Path to kubeconfig file."),
    context: Optional[str] = typer.Option(None, "--context", help="kubeconfig context to use."),
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="YAML file with gate options."),
    namespace: Optional[str] = typer.Option(None, "--namespace", "-n", help="Namespace for the validation pod."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Validation timeout in seconds."),
    debug: bool = typer.Option(False, "--debug", help="Enable DEBUG logging."),
) -> None:
    """Run the DNS / ClusterIP connectivity check once."""
    _setup_logging(debug)
    gate_config = _load(config_file, kubeconfig=kubeconfig, context=context, namespace=namespace, timeout=timeout)

    from netgate.agents.validator import ConnectivityValidator

    try:
        cluster = _connect(gate_config)
    except ClusterUnreachableError as exc:
        rprint(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(EXIT_FAILURE)

    cancel = threading.Event()
    _install_signal_handlers(cancel)
    result = ConnectivityValidator(cluster, gate_config, cancel).validate()
    if result.passed:
        rprint("[bold green]✔ PASS[/bold green]")
        sys.exit(EXIT_OK)
    rprint(f"[bold red]✘ FAIL[/bold red] ({result.reason.value if result.reason else 'unknown'})")
    if result.captured_output:
        console.print(result.captured_output, markup=False)
    sys.exit(EXIT_CANCELLED if cancel.is_set() else EXIT_FAILURE)


@app.command()
def version() -> None:
    """Show version information."""
    rprint(f"netgate version [cyan]{__version__}[/cyan]")


if __name__ == "__main__":
    app()
