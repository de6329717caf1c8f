"""Connectivity Validator — does pod-to-ClusterIP DNS actually work?

Runs a short-lived busybox pod in the target namespace that resolves
``kubernetes.default.svc.cluster.local`` through the cluster DNS ClusterIP
and opens TCP connections to the DNS service and the API service. The pod
prints ``NETGATE_RESULT=`` markers which decide PASS or FAIL.

The pod is always deleted on the way out: after success, failure, timeout,
or cancellation. Pod *creation* is retried a few times with backoff so
that an API-server hiccup is not mistaken for the network fault under test.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from netgate import config
from netgate.config import GateConfig
from netgate.errors import GateCancelledError, WorkloadCreationError
from netgate.models import FailureReason, ValidationResult
from netgate.tools.k8s_connector import ClusterClient
from netgate.tools.utils import wait_or_cancel

logger = logging.getLogger("netgate.validator")

PROBE_SCRIPT = """\
DNS={dns_ip}
rc=0
if nslookup {target} "$DNS"; then echo NETGATE_RESULT=dns_ok; else echo NETGATE_RESULT=dns_fail; rc=1; fi
if nc -w 3 "$DNS" 53 </dev/null; then echo NETGATE_RESULT=connect_ok; else echo NETGATE_RESULT=connect_fail; rc=1; fi
if nc -w 3 {target} 443 </dev/null; then echo NETGATE_RESULT=api_ok; else echo NETGATE_RESULT=api_fail; rc=1; fi
exit $rc
"""


def build_probe_pod(name: str, dns_ip: str, image: str, deadline: int) -> dict[str, Any]:
    """Manifest of the ephemeral validation pod."""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "labels": dict(config.MANAGED_BY_LABEL)},
        "spec": {
            "restartPolicy": "Never",
            "terminationGracePeriodSeconds": 0,
            "activeDeadlineSeconds": deadline,
            "containers": [{
                "name": "dnsprobe",
                "image": image,
                "command": [
                    "sh", "-c",
                    PROBE_SCRIPT.format(dns_ip=dns_ip, target=config.VALIDATION_TARGET),
                ],
            }],
        },
    }


def classify_output(output: str) -> Optional[FailureReason]:
    """Map probe markers to a failure reason; ``None`` means every check passed."""
    if "NETGATE_RESULT=dns_fail" in output:
        return FailureReason.DNSResolutionFailed
    if "NETGATE_RESULT=connect_fail" in output or "NETGATE_RESULT=api_fail" in output:
        return FailureReason.ConnectFailed
    if "NETGATE_RESULT=dns_ok" not in output:
        # the script never got as far as printing a result
        return FailureReason.DNSResolutionFailed
    return None


class ConnectivityValidator:
    def __init__(
        self,
        cluster: ClusterClient,
        gate_config: GateConfig,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.cluster = cluster
        self.config = gate_config
        self.cancel = cancel

    def validate(self, timeout: Optional[float] = None, namespace: Optional[str] = None) -> ValidationResult:
        timeout = timeout or self.config.timeout
        namespace = namespace or self.config.namespace
        name = f"{config.VALIDATION_POD_PREFIX}-{uuid.uuid4().hex[:8]}"

        try:
            dns_ip = self._dns_ip()
        except Exception as exc:
            logger.error("Cannot resolve cluster DNS ClusterIP: %s", exc)
            return ValidationResult.fail(FailureReason.APIUnreachable, str(exc))

        logger.info("Validating DNS via %s from pod %s/%s", dns_ip, namespace, name)
        manifest = build_probe_pod(name, dns_ip, self.config.validation_image, int(timeout) + 30)
        try:
            try:
                self._create_pod(namespace, manifest)
            except WorkloadCreationError as exc:
                logger.error("Validation pod could not be created: %s", exc)
                return ValidationResult.fail(FailureReason.WorkloadSchedulingFailed, str(exc), name)
            return self._await_completion(namespace, name, timeout)
        finally:
            self._cleanup(namespace, name)

    # ------------------------------------------------------------------

    def _dns_ip(self) -> str:
        if self.config.dns_service_ip:
            return self.config.dns_service_ip
        ip = self.cluster.service_cluster_ip(config.KUBE_SYSTEM, config.KUBE_DNS_SERVICE)
        if not ip or ip == "None":
            raise LookupError(f"service {config.KUBE_SYSTEM}/{config.KUBE_DNS_SERVICE} has no ClusterIP")
        return ip

    def _create_pod(self, namespace: str, manifest: dict[str, Any]) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.workload_create_retries),
            wait=wait_exponential(multiplier=self.config.workload_retry_backoff, min=0, max=10),
            retry=retry_if_not_exception_type(GateCancelledError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            retrying(self.cluster.create_pod, namespace, manifest)
        except Exception as exc:
            raise WorkloadCreationError(
                f"pod {manifest['metadata']['name']} rejected after "
                f"{self.config.workload_create_retries} attempt(s): {exc}"
            ) from exc

    def _await_completion(self, namespace: str, name: str, timeout: float) -> ValidationResult:
        deadline = time.monotonic() + timeout
        while True:
            try:
                phase = self.cluster.pod_phase(namespace, name)
            except Exception as exc:
                logger.warning("Reading pod %s/%s failed: %s", namespace, name, exc)
                phase = "Unknown"

            if phase in ("Succeeded", "Failed"):
                output = self.cluster.pod_logs(namespace, name)
                reason = classify_output(output)
                if phase == "Succeeded" and reason is None:
                    logger.info("Validation PASS")
                    return ValidationResult.ok(output, name)
                reason = reason or FailureReason.ConnectFailed
                logger.warning("Validation FAIL (%s)", reason.value)
                return ValidationResult.fail(reason, output, name)

            if time.monotonic() >= deadline:
                output = self.cluster.pod_logs(namespace, name)
                logger.warning("Validation FAIL: pod still %s after %.0fs", phase, timeout)
                return ValidationResult.fail(FailureReason.Timeout, output, name)

            if wait_or_cancel(self.config.poll_interval, self.cancel):
                return ValidationResult.fail(FailureReason.Cancelled, "", name)

    def _cleanup(self, namespace: str, name: str) -> None:
        try:
            self.cluster.delete_pod(namespace, name)
            logger.debug("Deleted validation pod %s/%s", namespace, name)
        except Exception as exc:
            logger.warning("Could not delete validation pod %s/%s: %s", namespace, name, exc)
