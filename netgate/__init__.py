"""netgate — Kubernetes network remediation gate."""

__version__ = "0.1.0"
