"""Gate Controller — the bounded validate / probe / diagnose / remediate loop.

Flow::

    Idle → Validating ─PASS→ Done-Success
               │
              FAIL → Probing → Diagnosing → (archive) → Remediating → Validating …
                                                  └─ last attempt → Done-Failure

At most ``max_attempts`` validations run. Every failed validation is
followed by a probe, a diagnosis and a diagnostics archive, including the
last one, which is not remediated because nothing would re-validate it.

Usage::

    from netgate.agents.controller import GateController
    result = GateController(cluster, runner, gate_config, cancel=event).run()
"""

from __future__ import annotations

import logging
import tarfile
import threading
from typing import Callable, Optional

from netgate.agents.diagnoser import diagnose
from netgate.agents.probe import ClusterProbe
from netgate.agents.remediator import Remediator
from netgate.agents.validator import ConnectivityValidator
from netgate.config import GateConfig
from netgate.errors import ClusterUnreachableError
from netgate.models import (
    ActionRecord,
    ClusterSnapshot,
    FailureReason,
    GateResult,
    GateState,
    RemediationAttempt,
)
from netgate.reporting.bundle import write_bundle
from netgate.tools.k8s_connector import ClusterClient
from netgate.tools.lock import GateLock
from netgate.tools.node_exec import NodeRunner
from netgate.tools.utils import utcnow_iso, wait_or_cancel

logger = logging.getLogger("netgate.controller")


class GateController:
    """Drives one gate run. ``state`` reflects the current phase."""

    def __init__(
        self,
        cluster: ClusterClient,
        runner: NodeRunner,
        gate_config: GateConfig,
        cancel: Optional[threading.Event] = None,
        *,
        validator: Optional[ConnectivityValidator] = None,
        probe: Optional[ClusterProbe] = None,
        remediator: Optional[Remediator] = None,
        bundle_writer: Callable[..., object] = write_bundle,
    ) -> None:
        self.cluster = cluster
        self.config = gate_config
        self.cancel = cancel or threading.Event()
        self.validator = validator or ConnectivityValidator(cluster, gate_config, self.cancel)
        self.probe = probe or ClusterProbe(cluster, runner, gate_config)
        self.remediator = remediator or Remediator(cluster, runner, gate_config, self.cancel)
        self.bundle_writer = bundle_writer
        self.state = GateState.Idle
        self.attempts: list[RemediationAttempt] = []
        self._archive_path: Optional[str] = None

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def run(self) -> GateResult:
        """Run the gate under the exclusive lock.

        Raises:
            GateLockedError: if another run holds the lock.
        """
        with GateLock(self.config.lock_path):
            return self._run()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run(self) -> GateResult:
        logger.info(
            "Gate starting: max_attempts=%d timeout=%.0fs namespace=%s",
            self.config.max_attempts, self.config.timeout, self.config.namespace,
        )
        try:
            self.cluster.ping()
        except ClusterUnreachableError as exc:
            logger.error("Precondition failed: %s", exc)
            return self._finish(GateState.DoneFailure, reason=str(exc))

        emergency_pending = self.config.emergency_clear_ipvs

        for number in range(1, self.config.max_attempts + 1):
            if self.cancel.is_set():
                return self._cancelled()

            self._transition(GateState.Validating, number)
            started = utcnow_iso()
            validation = self.validator.validate(self.config.timeout, self.config.namespace)
            attempt = RemediationAttempt(
                attempt_number=number,
                validation_result=validation.status,
                validation=validation,
                started_at=started,
            )
            self.attempts.append(attempt)

            if validation.passed:
                attempt.finished_at = utcnow_iso()
                return self._finish(GateState.DoneSuccess)

            if validation.reason == FailureReason.Cancelled or self.cancel.is_set():
                attempt.finished_at = utcnow_iso()
                return self._cancelled()

            self._transition(GateState.Probing, number)
            snapshot = self.probe.probe()

            self._transition(GateState.Diagnosing, number)
            attempt.findings = diagnose(snapshot, validation_failed=True)
            self._archive(attempt, snapshot)

            last = number == self.config.max_attempts
            if last:
                attempt.finished_at = utcnow_iso()
                break

            if wait_or_cancel(self.config.inter_attempt_delay, self.cancel):
                attempt.finished_at = utcnow_iso()
                return self._cancelled()

            self._transition(GateState.Remediating, number)
            outcomes = self.remediator.remediate(attempt.findings, emergency_clear=emergency_pending)
            emergency_pending = False
            attempt.actions_applied = [
                ActionRecord(kind=f.kind, node_id=f.node_id, outcome=o) for f, o in outcomes
            ]
            attempt.finished_at = utcnow_iso()

            if self.cancel.is_set():
                return self._cancelled()

        return self._finish(
            GateState.DoneFailure,
            reason=f"validation failed on all {self.config.max_attempts} attempt(s)",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, state: GateState, attempt: Optional[int] = None) -> None:
        suffix = f" (attempt {attempt}/{self.config.max_attempts})" if attempt else ""
        logger.info("State %s -> %s%s", self.state.value, state.value, suffix)
        self.state = state

    def _archive(self, attempt: RemediationAttempt, snapshot: ClusterSnapshot) -> None:
        try:
            path = self.bundle_writer(self.config, attempt, self.attempts, snapshot, attempt.findings)
        except (OSError, tarfile.TarError) as exc:
            logger.error("Could not write diagnostics for attempt %d: %s", attempt.attempt_number, exc)
            return
        attempt.diagnostics_archive_path = str(path)
        self._archive_path = str(path)

    def _cancelled(self) -> GateResult:
        logger.warning("Gate cancelled")
        return self._finish(GateState.DoneFailure, reason="cancelled", cancelled=True)

    def _finish(self, state: GateState, reason: str = "", cancelled: bool = False) -> GateResult:
        self._transition(state)
        result = GateResult(
            state=state,
            attempts=list(self.attempts),
            archive_path=self._archive_path,
            reason=reason,
            cancelled=cancelled,
        )
        logger.info(
            "Gate finished: %s after %d attempt(s)%s",
            state.value, len(self.attempts), f" ({reason})" if reason else "",
        )
        return result
