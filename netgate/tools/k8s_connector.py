"""Connector — thin wrapper over the official Kubernetes API client.

Every cluster read or write netgate performs goes through
:class:`ClusterClient`, so the probe, validator and remediator never touch
the ``kubernetes`` package directly and tests can substitute a fake.

Usage (standalone test)::

    python -m netgate.tools.k8s_connector --kubeconfig ~/.kube/config
"""

from __future__ import annotations

import argparse
import json
import logging
import subprocess
import threading
import time
from typing import Any, Optional

from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException

from netgate import config
from netgate.errors import ClusterUnreachableError, GateCancelledError, RolloutTimeoutError
from netgate.tools.utils import utcnow_iso, wait_or_cancel

logger = logging.getLogger("netgate.connector")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _kubectl_fallback(resource: str, kubeconfig: str | None = None) -> list[dict]:
    """Shell-out fallback when the Python client cannot list a resource."""
    cmd = ["kubectl", "get", resource, "-o", "json"]
    if kubeconfig:
        cmd += ["--kubeconfig", kubeconfig]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=30, check=True)
        data = json.loads(result.stdout)
        return data.get("items", [])
    except Exception as exc:
        logger.warning("kubectl fallback for %s failed: %s", resource, exc)
        return []


def _pod_ready(pod: Any) -> bool:
    if (pod.status.phase or "") != "Running":
        return False
    return any(c.type == "Ready" and c.status == "True" for c in pod.status.conditions or [])


def _ready_fraction(ready: Optional[int], desired: Optional[int]) -> tuple[bool, str]:
    ready = ready or 0
    desired = desired or 0
    return desired > 0 and ready >= desired, f"{ready}/{desired} ready"


# ---------------------------------------------------------------------------
# ClusterClient
# ---------------------------------------------------------------------------

class ClusterClient:
    """All Kubernetes API access used by the gate."""

    def __init__(self, api_client: Any, kubeconfig: Optional[str] = None) -> None:
        self.api_client = api_client
        self.kubeconfig = kubeconfig
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)

    @classmethod
    def connect(cls, kubeconfig: Optional[str] = None, context: Optional[str] = None) -> "ClusterClient":
        """Load kubeconfig, falling back to in-cluster config.

        Raises:
            ClusterUnreachableError: if neither configuration can be loaded.
        """
        try:
            k8s_config.load_kube_config(config_file=kubeconfig, context=context)
            logger.info("Loaded kubeconfig %s", kubeconfig or "(default)")
        except Exception as e1:
            logger.warning("Failed to load kubeconfig: %s", e1)
            try:
                k8s_config.load_incluster_config()
                logger.info("Loaded in-cluster config")
            except Exception as e2:
                raise ClusterUnreachableError(
                    f"Unable to connect to Kubernetes cluster. "
                    f"kubeconfig error: {e1}. in-cluster error: {e2}"
                ) from e2
        return cls(client.ApiClient(), kubeconfig=kubeconfig)

    def ping(self) -> None:
        """Fail fast if the API server does not answer."""
        try:
            client.VersionApi(self.api_client).get_code()
        except Exception as exc:
            raise ClusterUnreachableError(f"Kubernetes API unreachable: {exc}") from exc

    # --- nodes --------------------------------------------------------------

    def list_node_names(self) -> list[str]:
        try:
            nodes = self.core_v1.list_node().items
            return sorted(n.metadata.name for n in nodes)
        except ApiException as exc:
            logger.warning("Could not list nodes via API: %s", exc)
            items = _kubectl_fallback("nodes", self.kubeconfig)
            return sorted(i["metadata"]["name"] for i in items)

    def node_addresses(self) -> dict[str, str]:
        """Map node name to its InternalIP (falls back to the name)."""
        result: dict[str, str] = {}
        for node in self.core_v1.list_node().items:
            address = node.metadata.name
            for addr in node.status.addresses or []:
                if addr.type == "InternalIP":
                    address = addr.address
                    break
            result[node.metadata.name] = address
        return result

    # --- pods ---------------------------------------------------------------

    def list_pods(self, namespace: str, selector: str, node: Optional[str] = None) -> list[Any]:
        kwargs: dict[str, Any] = {"label_selector": selector}
        if node:
            kwargs["field_selector"] = f"spec.nodeName={node}"
        return list(self.core_v1.list_namespaced_pod(namespace, **kwargs).items)

    def create_pod(self, namespace: str, manifest: dict[str, Any]) -> str:
        pod = self.core_v1.create_namespaced_pod(namespace=namespace, body=manifest)
        return pod.metadata.name

    def pod_phase(self, namespace: str, name: str) -> str:
        pod = self.core_v1.read_namespaced_pod(name=name, namespace=namespace)
        return pod.status.phase or "Unknown"

    def pod_logs(self, namespace: str, name: str) -> str:
        try:
            return self.core_v1.read_namespaced_pod_log(name=name, namespace=namespace)
        except ApiException as exc:
            logger.debug("No logs for %s/%s: %s", namespace, name, exc)
            return ""

    def delete_pod(self, namespace: str, name: str) -> None:
        try:
            self.core_v1.delete_namespaced_pod(name=name, namespace=namespace, grace_period_seconds=0)
        except ApiException as exc:
            if exc.status != 404:
                raise

    def delete_pods(self, namespace: str, selector: str, node: Optional[str] = None) -> int:
        """Delete matching pods so their controller recreates them."""
        pods = self.list_pods(namespace, selector, node)
        for pod in pods:
            self.delete_pod(namespace, pod.metadata.name)
        return len(pods)

    def wait_for_pods_ready(
        self,
        namespace: str,
        selector: str,
        node: Optional[str],
        timeout: float,
        poll_interval: float = config.POLL_INTERVAL_SECONDS,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Block until pods matching *selector* on *node* are back and Ready.

        Terminating pods do not count; at least one replacement must exist.

        Raises:
            RolloutTimeoutError: if *timeout* elapses first.
            GateCancelledError: if *cancel* is set while waiting.
        """
        deadline = time.monotonic() + timeout
        where = f"{namespace}/{selector}" + (f" on {node}" if node else "")
        while True:
            pods = self.list_pods(namespace, selector, node)
            if pods and all(p.metadata.deletion_timestamp is None and _pod_ready(p) for p in pods):
                logger.info("Pods %s ready (%d)", where, len(pods))
                return
            if time.monotonic() >= deadline:
                raise RolloutTimeoutError(f"pods {where} not ready after {timeout:.0f}s")
            if wait_or_cancel(poll_interval, cancel):
                raise GateCancelledError(f"cancelled while waiting for pods {where}")

    def apiserver_commands(self) -> list[list[str]]:
        """Command lines of the kube-apiserver static pods."""
        commands: list[list[str]] = []
        for pod in self.list_pods(config.KUBE_SYSTEM, config.APISERVER_SELECTOR):
            for ctr in pod.spec.containers or []:
                commands.append(list(ctr.command or []) + list(ctr.args or []))
        return commands

    # --- services -----------------------------------------------------------

    def service_cluster_ip(self, namespace: str, name: str) -> Optional[str]:
        try:
            svc = self.core_v1.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return svc.spec.cluster_ip

    # --- configmaps ---------------------------------------------------------

    def read_configmap(self, namespace: str, name: str) -> dict[str, str]:
        cm = self.core_v1.read_namespaced_config_map(name=name, namespace=namespace)
        return dict(cm.data or {})

    def configmap_manifest(self, namespace: str, name: str) -> dict[str, Any]:
        cm = self.core_v1.read_namespaced_config_map(name=name, namespace=namespace)
        return self.api_client.sanitize_for_serialization(cm)

    def patch_configmap_data(self, namespace: str, name: str, data: dict[str, str]) -> None:
        self.core_v1.patch_namespaced_config_map(name=name, namespace=namespace, body={"data": data})

    # --- workloads ----------------------------------------------------------

    def deployment_ready(self, namespace: str, selector: str) -> tuple[bool, str]:
        deps = self.apps_v1.list_namespaced_deployment(namespace, label_selector=selector).items
        if not deps:
            return False, "not found"
        dep = deps[0]
        return _ready_fraction(dep.status.ready_replicas, dep.spec.replicas)

    def daemonset_status(self, namespace: str, name: str) -> dict[str, int]:
        ds = self.apps_v1.read_namespaced_daemon_set(name=name, namespace=namespace)
        st = ds.status
        return {
            "generation": ds.metadata.generation or 0,
            "observed_generation": st.observed_generation or 0,
            "desired": st.desired_number_scheduled or 0,
            "updated": st.updated_number_scheduled or 0,
            "ready": st.number_ready or 0,
            "available": st.number_available or 0,
        }

    def daemonset_ready(self, namespace: str, name: str) -> tuple[bool, str]:
        st = self.daemonset_status(namespace, name)
        return _ready_fraction(st["ready"], st["desired"])

    def restart_daemonset(self, namespace: str, name: str) -> None:
        """Equivalent of ``kubectl rollout restart daemonset``."""
        body = {
            "spec": {
                "template": {
                    "metadata": {"annotations": {config.RESTART_ANNOTATION: utcnow_iso()}}
                }
            }
        }
        self.apps_v1.patch_namespaced_daemon_set(name=name, namespace=namespace, body=body)

    def wait_for_rollout(
        self,
        namespace: str,
        name: str,
        timeout: float,
        poll_interval: float = config.POLL_INTERVAL_SECONDS,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Block until the DaemonSet rollout completes.

        Raises:
            RolloutTimeoutError: if *timeout* elapses first.
            GateCancelledError: if *cancel* is set while waiting.
        """
        deadline = time.monotonic() + timeout
        while True:
            st = self.daemonset_status(namespace, name)
            if (
                st["observed_generation"] >= st["generation"]
                and st["updated"] >= st["desired"]
                and st["available"] >= st["desired"]
            ):
                logger.info("Rollout of %s/%s complete (%d pods)", namespace, name, st["desired"])
                return
            if time.monotonic() >= deadline:
                raise RolloutTimeoutError(
                    f"daemonset {namespace}/{name} rollout not complete after {timeout:.0f}s: {st}"
                )
            if wait_or_cancel(poll_interval, cancel):
                raise GateCancelledError(f"cancelled while waiting for {namespace}/{name} rollout")


# ---------------------------------------------------------------------------
# CLI entrypoint for standalone testing
# ---------------------------------------------------------------------------

def _cli() -> None:
    parser = argparse.ArgumentParser(description="Check API access for netgate.")
    parser.add_argument("--kubeconfig", default=config.DEFAULT_KUBECONFIG)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    cluster = ClusterClient.connect(args.kubeconfig)
    cluster.ping()
    print(f"Connected. Nodes: {', '.join(cluster.list_node_names())}")


if __name__ == "__main__":
    _cli()
