"""Unit tests for persisted cluster records."""

from __future__ import annotations

import pytest

from turingpi_cluster.errors import ConfigError
from turingpi_cluster.models import ClusterState, ClusterStatus, TalosClusterState
from turingpi_cluster.state import ClusterRecord, StateStore

DESCRIPTION = {
    "name": "demo",
    "control_plane": {"host": "10.0.0.10", "ssh_user": "root", "ssh_password": "turing"},
}


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / ".turingpi")


def _record(name: str = "demo") -> ClusterRecord:
    state = ClusterState(token="abc", kubeconfig="apiVersion: v1\n", status=ClusterStatus.READY)
    return ClusterRecord(name, "k3s", {**DESCRIPTION, "name": name}, state)


class TestStateStore:
    """Tests for StateStore."""

    def test_load_missing(self, store):
        """Test an unknown cluster loads as None."""
        assert store.load("demo") is None
        assert store.list_names() == []

    def test_save_and_load(self, store):
        """Test a saved record loads back equal."""
        path = store.save(_record())

        loaded = store.load("demo")

        assert path == store.base_dir / "clusters" / "demo.yaml"
        assert loaded.state == _record().state
        assert loaded.config.control_plane.host == "10.0.0.10"

    def test_saved_owner_only(self, store):
        """Test state files holding tokens are not world readable."""
        path = store.save(_record())
        assert (path.stat().st_mode & 0o777) == 0o600

    def test_list_and_delete(self, store):
        store.save(_record("b"))
        store.save(_record("a"))

        assert store.list_names() == ["a", "b"]
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.list_names() == ["b"]

    def test_corrupt_record(self, store):
        """Test an unparseable record raises ConfigError."""
        store.save(_record())
        store.path_for("demo").write_text("state: {status: exploded}\nname: demo\n")

        with pytest.raises(ConfigError, match="Corrupt state file"):
            store.load("demo")

    @pytest.mark.parametrize("name", ["", "../etc", ".hidden"])
    def test_invalid_names(self, store, name):
        """Test names that would escape the state directory are rejected."""
        with pytest.raises(ConfigError, match="Invalid cluster name"):
            store.path_for(name)


class TestClusterRecord:
    """Tests for ClusterRecord serialization."""

    def test_talos_state_type(self):
        """Test the backend selects the state class."""
        record = ClusterRecord.from_dict(
            {"name": "lab", "backend": "talos", "state": {"talosconfig": "ctx", "status": "ready"}}
        )
        assert isinstance(record.state, TalosClusterState)
        assert record.state.talosconfig == "ctx"

    def test_to_dict(self):
        data = _record().to_dict()
        assert data["backend"] == "k3s"
        assert data["state"]["status"] == "ready"
