"""Unit tests for the cluster lifecycle commands."""

import json
from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from turingpi_cluster.errors import CommandError, ReplacementRequired
from turingpi_cluster.main import cli
from turingpi_cluster.models import ClusterState, ClusterStatus, TalosClusterState
from turingpi_cluster.state import ClusterRecord, StateStore

BUILD = "turingpi_cluster.commands.cluster.build_orchestrator"

K3S_FILE = {
    "backend": "k3s",
    "name": "demo",
    "control_plane": {"host": "10.0.0.10", "ssh_user": "root", "ssh_password": "turing"},
    "workers": [{"host": "10.0.0.11", "ssh_user": "root", "ssh_password": "turing"}],
}

TALOS_FILE = {
    "backend": "talos",
    "name": "lab",
    "cluster_endpoint": "https://10.0.0.20:6443",
    "control_planes": ["10.0.0.20"],
}


def _ready_state() -> ClusterState:
    return ClusterState(
        token="t" * 64,
        kubeconfig="apiVersion: v1\nkind: Config\n",
        api_endpoint="https://10.0.0.10:6443",
        status=ClusterStatus.READY,
        version="v1.29.4+k3s1",
        node_names=["turing1", "turing2"],
    )


@pytest.fixture
def runner():
    """Create CLI runner."""
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("TURINGPI_CONFIG", str(tmp_path / "config.yaml"))
    return tmp_path / "state"


@pytest.fixture
def store(state_dir):
    return StateStore(state_dir)


@pytest.fixture
def cluster_file(tmp_path):
    def _write(data, name="cluster.yaml"):
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data))
        return str(path)

    return _write


@pytest.fixture
def orchestrator():
    with patch(BUILD) as mock_build:
        mock_orchestrator = MagicMock()
        mock_build.return_value = mock_orchestrator
        yield mock_orchestrator


def _invoke(runner, state_dir, *args):
    return runner.invoke(cli, ["--state-dir", str(state_dir), *args])


class TestCreate:
    """Tests for turingpi-cluster create."""

    def test_create_saves_state(self, runner, state_dir, store, cluster_file, orchestrator):
        orchestrator.create.return_value = _ready_state()

        result = _invoke(runner, state_dir, "create", cluster_file(K3S_FILE))

        assert result.exit_code == 0, result.output
        assert "Cluster 'demo' is ready" in result.output
        record = store.load("demo")
        assert record.state.token == "t" * 64
        assert record.description == K3S_FILE

    def test_create_json(self, runner, state_dir, cluster_file, orchestrator):
        """Test --json prints a summary without secrets."""
        orchestrator.create.return_value = _ready_state()

        result = _invoke(runner, state_dir, "--json", "create", cluster_file(K3S_FILE))

        summary = json.loads(result.output[result.output.index("{"):])
        assert summary["status"] == "ready"
        assert summary["nodes"] == ["turing1", "turing2"]
        assert "t" * 64 not in result.output

    def test_cli_install_timeout_is_default(
        self, runner, state_dir, cluster_file, orchestrator, monkeypatch
    ):
        """Test TURINGPI_INSTALL_TIMEOUT applies when the file sets no timeout."""
        monkeypatch.setenv("TURINGPI_INSTALL_TIMEOUT", "900")
        orchestrator.create.return_value = _ready_state()
        pinned = cluster_file({**K3S_FILE, "install_timeout": 60}, name="pinned.yaml")

        _invoke(runner, state_dir, "create", cluster_file(K3S_FILE))
        _invoke(runner, state_dir / "other", "create", pinned)

        timeouts = [c.args[0].install_timeout for c in orchestrator.create.call_args_list]
        assert timeouts == [900, 60]

    def test_create_existing_refused(self, runner, state_dir, store, cluster_file, orchestrator):
        store.save(ClusterRecord("demo", "k3s", K3S_FILE, _ready_state()))

        result = _invoke(runner, state_dir, "create", cluster_file(K3S_FILE))

        assert result.exit_code == 1
        assert "already exists" in result.output
        orchestrator.create.assert_not_called()

    def test_create_failure(self, runner, state_dir, store, cluster_file, orchestrator):
        """Test a failed create exits 1 and stores nothing."""
        orchestrator.create.side_effect = CommandError("install failed", step="install server")

        result = _invoke(runner, state_dir, "create", cluster_file(K3S_FILE))

        assert result.exit_code == 1
        assert "install server: install failed" in result.output
        assert store.load("demo") is None

    def test_invalid_description(self, runner, state_dir, cluster_file, orchestrator):
        result = _invoke(runner, state_dir, "create", cluster_file({"name": "x"}))

        assert result.exit_code == 1
        assert "control_plane is required" in result.output

    def test_talos_reuses_secrets(self, runner, state_dir, tmp_path, cluster_file, orchestrator):
        """Test an existing secrets file is passed to the orchestrator."""
        secrets = tmp_path / "secrets.yaml"
        secrets.write_text("cluster:\n  id: kept\n")
        orchestrator.create.return_value = TalosClusterState(status=ClusterStatus.READY)

        result = _invoke(
            runner, state_dir, "create", cluster_file({**TALOS_FILE, "secrets_path": str(secrets)})
        )

        assert result.exit_code == 0, result.output
        assert orchestrator.create.call_args.args[1] == "cluster:\n  id: kept\n"


class TestRead:
    """Tests for turingpi-cluster read."""

    def test_read_refreshes(self, runner, state_dir, store, cluster_file, orchestrator):
        store.save(ClusterRecord("demo", "k3s", K3S_FILE, _ready_state()))
        degraded = _ready_state()
        degraded.status = ClusterStatus.DEGRADED
        orchestrator.read.return_value = degraded

        result = _invoke(runner, state_dir, "read", cluster_file(K3S_FILE))

        assert result.exit_code == 0
        assert store.load("demo").state.status == ClusterStatus.DEGRADED

    def test_read_gone_removes_state(self, runner, state_dir, store, cluster_file, orchestrator):
        store.save(ClusterRecord("demo", "k3s", K3S_FILE, _ready_state()))
        orchestrator.read.return_value = None

        result = _invoke(runner, state_dir, "read", cluster_file(K3S_FILE))

        assert "no longer exists" in result.output
        assert not store.exists("demo")

    def test_read_unmanaged(self, runner, state_dir, cluster_file, orchestrator):
        result = _invoke(runner, state_dir, "read", cluster_file(K3S_FILE))
        assert result.exit_code == 1
        assert "not managed" in result.output


class TestApply:
    """Tests for turingpi-cluster apply."""

    def test_apply_creates_when_missing(self, runner, state_dir, store, cluster_file, orchestrator):
        orchestrator.create.return_value = _ready_state()

        result = _invoke(runner, state_dir, "apply", cluster_file(K3S_FILE))

        assert result.exit_code == 0, result.output
        assert store.exists("demo")

    def test_apply_updates_in_place(self, runner, state_dir, store, cluster_file, orchestrator):
        store.save(ClusterRecord("demo", "k3s", K3S_FILE, _ready_state()))
        orchestrator.update.return_value = _ready_state()
        changed = {**K3S_FILE, "metallb": {"ip_range": "10.0.0.80-10.0.0.89"}}

        result = _invoke(runner, state_dir, "apply", cluster_file(changed))

        assert result.exit_code == 0, result.output
        assert "updated" in result.output
        assert store.load("demo").description == changed

    def test_replacement_refused(self, runner, state_dir, store, cluster_file, orchestrator):
        """Test destructive changes need --allow-replace."""
        store.save(ClusterRecord("demo", "k3s", K3S_FILE, _ready_state()))
        orchestrator.update.side_effect = ReplacementRequired(["workers"])

        result = _invoke(runner, state_dir, "apply", cluster_file({**K3S_FILE, "workers": []}))

        assert result.exit_code == 1
        assert "--allow-replace" in result.output
        orchestrator.delete.assert_not_called()

    def test_replacement_with_flag(self, runner, state_dir, store, cluster_file, orchestrator):
        store.save(ClusterRecord("demo", "k3s", K3S_FILE, _ready_state()))
        orchestrator.update.side_effect = ReplacementRequired(["workers"])
        orchestrator.delete.return_value = []
        orchestrator.create.return_value = _ready_state()
        changed = {**K3S_FILE, "workers": []}

        result = _invoke(runner, state_dir, "apply", "--allow-replace", cluster_file(changed))

        assert result.exit_code == 0, result.output
        orchestrator.delete.assert_called_once()
        orchestrator.create.assert_called_once()
        assert store.load("demo").description == changed


class TestDestroy:
    """Tests for turingpi-cluster destroy."""

    def test_destroy(self, runner, state_dir, store, cluster_file, orchestrator):
        store.save(ClusterRecord("demo", "k3s", K3S_FILE, _ready_state()))
        orchestrator.delete.return_value = ["agent 10.0.0.11 uninstall failed: refused"]

        result = _invoke(runner, state_dir, "destroy", "-y", cluster_file(K3S_FILE))

        assert result.exit_code == 0
        assert "destroyed" in result.output
        assert "agent 10.0.0.11 uninstall failed" in result.output
        assert not store.exists("demo")

    def test_destroy_declined(self, runner, state_dir, store, cluster_file, orchestrator):
        store.save(ClusterRecord("demo", "k3s", K3S_FILE, _ready_state()))

        args = ["--state-dir", str(state_dir), "destroy", cluster_file(K3S_FILE)]
        runner.invoke(cli, args, input="n\n")

        orchestrator.delete.assert_not_called()
        assert store.exists("demo")


class TestImportAndQueries:
    """Tests for import-k3s, status and kubeconfig."""

    def test_import(self, runner, state_dir, store, tmp_path, orchestrator):
        key = tmp_path / "id_ed25519"
        key.write_text("key")
        config = MagicMock(version="v1.29.4+k3s1")
        orchestrator.import_cluster.return_value = (config, _ready_state())

        result = _invoke(runner, state_dir, "import-k3s", "adopted", "10.0.0.10", "root", str(key))

        assert result.exit_code == 0, result.output
        record = store.load("adopted")
        assert record.description["control_plane"]["host"] == "10.0.0.10"
        assert record.config.control_plane.credentials.private_key_path == str(key)

    def test_status_list(self, runner, state_dir, store):
        store.save(ClusterRecord("demo", "k3s", K3S_FILE, _ready_state()))

        result = _invoke(runner, state_dir, "status")

        assert result.exit_code == 0
        assert "demo" in result.output

    def test_status_empty(self, runner, state_dir):
        result = _invoke(runner, state_dir, "status")
        assert "No clusters managed" in result.output

    def test_kubeconfig(self, runner, state_dir, store):
        store.save(ClusterRecord("demo", "k3s", K3S_FILE, _ready_state()))

        result = _invoke(runner, state_dir, "kubeconfig", "demo")

        assert result.output == "apiVersion: v1\nkind: Config\n"

    def test_kubeconfig_missing(self, runner, state_dir):
        result = _invoke(runner, state_dir, "kubeconfig", "ghost")
        assert result.exit_code == 1
