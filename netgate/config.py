"""netgate configuration — constants, defaults, and the validated gate config.

All tunables live here so components stay free of magic numbers.
Override at runtime via ``NETGATE_*`` environment variables, a YAML file
passed with ``--config``, or CLI flags (highest precedence).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from netgate.errors import ConfigError
from netgate.tools.parsers import normalize_cidr

# ---------------------------------------------------------------------------
# Gate loop defaults
# ---------------------------------------------------------------------------

DEFAULT_NAMESPACE: str = os.getenv("NETGATE_NAMESPACE", "default")
DEFAULT_TIMEOUT: float = float(os.getenv("NETGATE_TIMEOUT", "60"))
DEFAULT_MAX_ATTEMPTS: int = int(os.getenv("NETGATE_MAX_ATTEMPTS", "3"))
DEFAULT_INTER_ATTEMPT_DELAY: float = float(os.getenv("NETGATE_INTER_ATTEMPT_DELAY", "10"))
DEFAULT_EMERGENCY_CLEAR_IPVS: bool = os.getenv("NETGATE_EMERGENCY_CLEAR_IPVS", "0") in ("1", "true", "yes")

# ---------------------------------------------------------------------------
# Output locations
# ---------------------------------------------------------------------------

DIAGNOSTICS_DIR: str = os.getenv("NETGATE_DIAGNOSTICS_DIR", "diagnostics")
ARCHIVE_DIR: str = os.getenv("NETGATE_ARCHIVE_DIR", os.path.join(DIAGNOSTICS_DIR, "archives"))
BACKUP_DIR: str = os.getenv("NETGATE_BACKUP_DIR", "backups")
DEFAULT_KUBECONFIG: str = os.getenv("KUBECONFIG", os.path.expanduser("~/.kube/config"))
DEFAULT_REPORT: str = "report.md"
LOCK_FILENAME: str = ".netgate.lock"

# ---------------------------------------------------------------------------
# Validation workload
# ---------------------------------------------------------------------------

VALIDATION_IMAGE: str = os.getenv("NETGATE_VALIDATION_IMAGE", "busybox:1.36")
VALIDATION_POD_PREFIX: str = "netgate-dnsprobe"
VALIDATION_TARGET: str = "kubernetes.default.svc.cluster.local"
WORKLOAD_CREATE_RETRIES: int = 3
WORKLOAD_RETRY_BACKOFF: float = 1.0
POLL_INTERVAL_SECONDS: float = 2.0
MANAGED_BY_LABEL: dict[str, str] = {"app.kubernetes.io/managed-by": "netgate"}

# ---------------------------------------------------------------------------
# Well-known kube-system objects
# ---------------------------------------------------------------------------

KUBE_SYSTEM: str = "kube-system"
KUBE_PROXY_CONFIGMAP: str = "kube-proxy"
KUBE_PROXY_CONFIG_KEY: str = "config.conf"
KUBE_PROXY_DAEMONSET: str = "kube-proxy"
KUBE_DNS_SERVICE: str = "kube-dns"
COREDNS_SELECTOR: str = "k8s-app=kube-dns"
APISERVER_SELECTOR: str = "component=kube-apiserver"
RESTART_ANNOTATION: str = "netgate/restartedAt"
ROLLOUT_TIMEOUT: float = float(os.getenv("NETGATE_ROLLOUT_TIMEOUT", "180"))

# CNI daemon pods restarted for ForwardPolicyBlocking, by label selector.
CNI_SELECTORS: list[str] = [
    "k8s-app=calico-node",
    "app=flannel",
    "k8s-app=cilium",
    "name=weave-net",
]

# ---------------------------------------------------------------------------
# Node access
# ---------------------------------------------------------------------------

NODE_EXEC: str = os.getenv("NETGATE_NODE_EXEC", "pod")
AGENT_NAMESPACE: str = os.getenv("NETGATE_AGENT_NAMESPACE", "kube-system")
AGENT_SELECTOR: str = os.getenv("NETGATE_AGENT_SELECTOR", "app=netgate-node-agent")
SSH_USER: str = os.getenv("NETGATE_SSH_USER", "root")
SSH_KEY: Optional[str] = os.getenv("NETGATE_SSH_KEY")
COMMAND_TIMEOUT: int = int(os.getenv("NETGATE_COMMAND_TIMEOUT", "30"))
MAX_WORKERS: int = int(os.getenv("NETGATE_MAX_WORKERS", "8"))

# ---------------------------------------------------------------------------
# Persistence files written on nodes
# ---------------------------------------------------------------------------

SYSCTL_PERSIST_FILE: str = "/etc/sysctl.d/99-netgate.conf"
MODULES_PERSIST_FILE: str = "/etc/modules-load.d/kubernetes.conf"
BRIDGE_MODULES: list[str] = ["br_netfilter", "overlay"]


# ---------------------------------------------------------------------------
# GateConfig: the validated configuration object
# ---------------------------------------------------------------------------

class GateConfig(BaseModel):
    """Recognised gate options, validated once at startup."""

    namespace: str = DEFAULT_NAMESPACE
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    inter_attempt_delay: float = Field(default=DEFAULT_INTER_ATTEMPT_DELAY, ge=0)
    diagnostics_dir: Path = Path(DIAGNOSTICS_DIR)
    archive_dir: Path = Path(ARCHIVE_DIR)
    emergency_clear_ipvs: bool = DEFAULT_EMERGENCY_CLEAR_IPVS

    # cluster access
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    nodes: list[str] = Field(default_factory=list)

    # node command execution
    node_exec: Literal["pod", "ssh"] = NODE_EXEC  # type: ignore[assignment]
    agent_namespace: str = AGENT_NAMESPACE
    agent_selector: str = AGENT_SELECTOR
    ssh_user: str = SSH_USER
    ssh_key: Optional[str] = SSH_KEY
    command_timeout: int = Field(default=COMMAND_TIMEOUT, gt=0)
    max_workers: int = Field(default=MAX_WORKERS, ge=1)

    # validation workload
    validation_image: str = VALIDATION_IMAGE
    dns_service_ip: Optional[str] = None
    workload_create_retries: int = Field(default=WORKLOAD_CREATE_RETRIES, ge=1)
    workload_retry_backoff: float = Field(default=WORKLOAD_RETRY_BACKOFF, ge=0)
    poll_interval: float = Field(default=POLL_INTERVAL_SECONDS, gt=0)

    # remediation
    service_cidr_override: Optional[str] = None
    rollout_timeout: float = Field(default=ROLLOUT_TIMEOUT, gt=0)
    backup_dir: Path = Path(BACKUP_DIR)
    cni_selectors: list[str] = Field(default_factory=lambda: list(CNI_SELECTORS))

    @field_validator("service_cidr_override")
    @classmethod
    def _check_cidr(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        normalized = normalize_cidr(value)
        if normalized is None:
            raise ValueError(f"not a CIDR: {value!r}")
        return normalized

    @property
    def lock_path(self) -> Path:
        return self.diagnostics_dir / LOCK_FILENAME


def load_config(path: Optional[str] = None, **overrides: Any) -> GateConfig:
    """Build a :class:`GateConfig` from an optional YAML file plus overrides.

    ``None`` overrides are ignored so unset CLI flags fall through to the
    file or the environment defaults.
    """
    data: dict[str, Any] = {}
    if path:
        try:
            with open(path, encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        data.update(loaded)

    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return GateConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid gate configuration: {exc}") from exc
