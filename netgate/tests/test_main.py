"""
Tests for main.py - the offline CLI commands.
"""

from typer.testing import CliRunner

from netgate import __version__
from netgate.main import app
from netgate.models import ClusterSnapshot, KubeProxyMode, NodeState
from netgate.tools.utils import write_json

cli = CliRunner()


def test_version():
    """Test the version command exits cleanly."""
    result = cli.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_diagnose_saved_snapshot(tmp_path):
    """Test offline diagnosis of a snapshot saved by `netgate probe`."""
    snap = ClusterSnapshot(
        per_node={"node-a": NodeState(name="node-a", ip_forward_enabled=False)},
        kube_proxy_mode=KubeProxyMode.iptables,
    )
    path = write_json(snap.model_dump(mode="json"), tmp_path / "snapshot.json")

    result = cli.invoke(app, ["diagnose", str(path), "--json"])

    assert result.exit_code == 0
    assert '"kind":"IPForwardDisabled"' in result.output
    assert '"node_id":"node-a"' in result.output


def test_diagnose_missing_file(tmp_path):
    """Test an unreadable snapshot exits 1."""
    result = cli.invoke(app, ["diagnose", str(tmp_path / "nope.json")])
    assert result.exit_code == 1
