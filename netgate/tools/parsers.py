"""Parsers for raw node and cluster tool output.

Each function takes the text a tool printed and returns a typed value, or
``None`` / ``unknown`` when the text does not contain what we need.
Parsing happens once, inside the probe; nothing downstream greps strings.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Optional

import yaml

from netgate.models import ForwardPolicy, IptablesBackend, KubeProxyMode

# Chains that CNI plugins and kube-proxy hang off FORWARD to accept pod traffic.
CNI_FORWARD_CHAINS: tuple[str, ...] = (
    "KUBE-FORWARD",
    "cali-FORWARD",
    "FLANNEL-FWD",
    "CILIUM_FORWARD",
    "WEAVE-NPC",
    "KUBE-ROUTER-FORWARD",
    "ANTREA-FORWARD",
)

_POLICY_RE = re.compile(r"^-P\s+FORWARD\s+(\S+)", re.MULTILINE)
_JUMP_RE = re.compile(r"^-A\s+FORWARD\b.*?\s-[jg]\s+(\S+)", re.MULTILINE)
_IPVS_SERVICE_RE = re.compile(r"^(TCP|UDP|SCTP|FWM)\s+\S+", re.MULTILINE)
_OLD_IPTABLES_RE = re.compile(r"iptables v1\.[0-7]\.")
_SERVICE_RANGE_FLAG = "--service-cluster-ip-range"


# ---------------------------------------------------------------------------
# sysctl / modules
# ---------------------------------------------------------------------------

def parse_sysctl_bool(text: str) -> Optional[bool]:
    """Parse ``sysctl -n key`` (``1``) or ``sysctl key`` (``key = 1``) output."""
    value = text.strip().splitlines()[-1] if text.strip() else ""
    if "=" in value:
        value = value.split("=", 1)[1]
    value = value.strip()
    if value == "1":
        return True
    if value == "0":
        return False
    return None


def parse_lsmod(text: str) -> set[str]:
    """Return the set of loaded module names from ``lsmod`` output."""
    modules: set[str] = set()
    for line in text.splitlines():
        parts = line.split()
        if not parts or parts[0] == "Module":
            continue
        modules.add(parts[0])
    return modules


def has_ipvs_modules(modules: set[str]) -> bool:
    return any(m == "ip_vs" or m.startswith("ip_vs_") for m in modules)


# ---------------------------------------------------------------------------
# iptables / ipvs
# ---------------------------------------------------------------------------

def parse_forward_chain(text: str) -> tuple[ForwardPolicy, Optional[bool]]:
    """Parse ``iptables -t filter -S FORWARD`` into (policy, CNI chains present).

    The second element is ``None`` when the dump carries no policy line,
    i.e. the output is not an iptables rule dump at all.
    """
    match = _POLICY_RE.search(text)
    if not match:
        return ForwardPolicy.unknown, None
    try:
        policy = ForwardPolicy(match.group(1).upper())
    except ValueError:
        policy = ForwardPolicy.unknown
    targets = set(_JUMP_RE.findall(text))
    present = any(chain in targets for chain in CNI_FORWARD_CHAINS)
    return policy, present


def count_ipvs_services(text: str) -> int:
    """Count virtual services in ``ipvsadm -Ln`` output."""
    return len(_IPVS_SERVICE_RE.findall(text))


def parse_iptables_backend(text: str) -> IptablesBackend:
    """Detect the backend from ``iptables --version``.

    ``iptables v1.8.7 (nf_tables)`` -> nft, ``(legacy)`` -> legacy. Releases
    before 1.8 print no suffix and only ever had the legacy backend.
    """
    if "nf_tables" in text:
        return IptablesBackend.nft
    if "legacy" in text or _OLD_IPTABLES_RE.search(text):
        return IptablesBackend.legacy
    return IptablesBackend.unknown


# ---------------------------------------------------------------------------
# kube-proxy / kube-apiserver
# ---------------------------------------------------------------------------

def parse_kube_proxy_config(text: str) -> tuple[KubeProxyMode, Optional[str]]:
    """Parse the kube-proxy ``config.conf`` YAML into (mode, clusterCIDR).

    An empty ``mode`` means the Linux default, iptables.
    """
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError:
        return KubeProxyMode.unknown, None
    if not isinstance(data, dict):
        return KubeProxyMode.unknown, None

    raw_mode = (data.get("mode") or "").strip().lower()
    if raw_mode in ("", "iptables"):
        mode = KubeProxyMode.iptables
    elif raw_mode == "ipvs":
        mode = KubeProxyMode.ipvs
    else:
        mode = KubeProxyMode.unknown

    cidr = normalize_cidr(data.get("clusterCIDR") or "")
    return mode, cidr


def parse_service_cidr_flag(command: list[str]) -> Optional[str]:
    """Find ``--service-cluster-ip-range`` in a kube-apiserver command line."""
    for i, arg in enumerate(command):
        if arg.startswith(_SERVICE_RANGE_FLAG + "="):
            return normalize_cidr(arg.split("=", 1)[1])
        if arg == _SERVICE_RANGE_FLAG and i + 1 < len(command):
            return normalize_cidr(command[i + 1])
    return None


def normalize_cidr(value: str) -> Optional[str]:
    """Canonicalise a (possibly dual-stack, comma-separated) CIDR string."""
    parts = [p.strip() for p in str(value).split(",") if p.strip()]
    if not parts:
        return None
    try:
        return ",".join(str(ipaddress.ip_network(p, strict=False)) for p in parts)
    except ValueError:
        return None


def replace_cluster_cidr(config_text: str, cidr: str) -> str:
    """Return kube-proxy ``config.conf`` text with ``clusterCIDR`` set to *cidr*."""
    data = yaml.safe_load(config_text) or {}
    data["clusterCIDR"] = cidr
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
