"""Exception hierarchy for netgate.

Action-level errors are caught inside the components and turned into
``unknown`` snapshot fields or ``Failed`` outcomes. Only the fatal ones
(``ClusterUnreachableError``, ``GateLockedError``, ``ConfigError``) reach
the CLI.
"""

from __future__ import annotations


class NetgateError(Exception):
    """Base class for every netgate error."""


class ConfigError(NetgateError):
    """The gate configuration is missing or invalid."""


class ClusterUnreachableError(NetgateError):
    """The Kubernetes API cannot be reached at all."""


class NodeUnreachableError(NetgateError):
    """No command channel to a node could be established."""

    def __init__(self, node: str, reason: str) -> None:
        super().__init__(f"node {node} unreachable: {reason}")
        self.node = node
        self.reason = reason


class CommandFailedError(NetgateError):
    """A node command exited non-zero."""

    def __init__(self, node: str, command: str, rc: int, stderr: str = "") -> None:
        super().__init__(f"[{node}] `{command}` exited {rc}: {stderr.strip()[:200]}")
        self.node = node
        self.command = command
        self.rc = rc
        self.stderr = stderr


class WorkloadCreationError(NetgateError):
    """The API server refused the validation pod."""


class RolloutTimeoutError(NetgateError):
    """A DaemonSet rollout did not finish within its timeout."""


class GateLockedError(NetgateError):
    """Another gate run holds the lock for this cluster."""


class GateCancelledError(NetgateError):
    """The run was cancelled at a suspension point."""
