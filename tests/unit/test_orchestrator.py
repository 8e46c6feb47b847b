"""Unit tests for the cluster lifecycle orchestrators."""

from __future__ import annotations

import re
from dataclasses import replace

import pytest
from fakes import make_node

from turingpi_cluster.errors import (
    CommandError,
    ConfigError,
    ConnectivityError,
    ReplacementRequired,
    WaitTimeoutError,
)
from turingpi_cluster.models import (
    ClusterConfig,
    ClusterState,
    ClusterStatus,
    IngressSpec,
    LoadBalancerSpec,
    TalosClusterConfig,
    TalosClusterState,
    TalosNodeConfig,
)
from turingpi_cluster.orchestrator import K3sClusterOrchestrator, TalosClusterOrchestrator
from turingpi_cluster.talos import TalosProvisioner

LB = LoadBalancerSpec("10.0.0.80-10.0.0.89")


def _k3s_config(**overrides) -> ClusterConfig:
    values = {
        "name": "demo",
        "control_plane": make_node("10.0.0.10", hostname="turing1"),
        "workers": (make_node("10.0.0.11", hostname="turing2"),),
        "install_timeout": 1,
    }
    values.update(overrides)
    return ClusterConfig(**values)


def _talos_config(**overrides) -> TalosClusterConfig:
    values = {
        "name": "lab",
        "endpoint": "https://10.0.0.20:6443",
        "control_planes": (TalosNodeConfig("10.0.0.20"),),
        "workers": (TalosNodeConfig("10.0.0.21"), TalosNodeConfig("10.0.0.22")),
        "bootstrap_timeout": 1,
    }
    values.update(overrides)
    return TalosClusterConfig(**values)


@pytest.fixture
def k3s(fleet, api_check, addons, poller):
    return K3sClusterOrchestrator(
        executor_factory=fleet.factory, api_check=api_check, addon_factory=addons, poller=poller
    )


@pytest.fixture
def talos(talosctl, addons, poller):
    def _provisioner():
        return TalosProvisioner(runner_factory=talosctl.factory, poller=poller)

    return TalosClusterOrchestrator(
        provisioner_factory=_provisioner,
        addon_factory=addons,
        poller=poller,
    )


class TestK3sCreate:
    """Tests for creating K3s clusters."""

    def test_create_ready(self, fleet, api_check, k3s):
        """Test one server and one worker come up ready."""
        state = k3s.create(_k3s_config())

        assert state.status == ClusterStatus.READY
        assert state.api_endpoint == "https://10.0.0.10:6443"
        assert state.node_names == ["turing1", "turing2"]
        assert state.version == "v1.29.4+k3s1"
        assert api_check.endpoints[-1] == "https://10.0.0.10:6443"

    def test_kubeconfig_is_routable(self, k3s):
        """Test the stored kubeconfig never points at loopback."""
        state = k3s.create(_k3s_config())

        assert "127.0.0.1" not in state.kubeconfig
        assert "https://10.0.0.10:6443" in state.kubeconfig

    def test_token_generated_when_absent(self, fleet, k3s):
        """Test a fresh 64-character token is used and joined with."""
        state = k3s.create(_k3s_config())

        assert len(state.token) == 64
        assert fleet.token == state.token
        assert state.node_token.endswith(state.token)

    def test_given_token_used(self, fleet, k3s):
        state = k3s.create(_k3s_config(token="b" * 64))
        assert state.token == "b" * 64
        assert fleet.token == "b" * 64

    def test_server_before_workers(self, fleet, k3s):
        """Test agents install only after the server."""
        k3s.create(_k3s_config())

        installs = [h for h, c in fleet.calls if re.search(r"k3s-install.sh (server|agent)", c)]
        assert installs == ["10.0.0.10", "10.0.0.11"]

    def test_kubeconfig_written(self, tmp_path, k3s):
        path = tmp_path / "kube" / "demo.yaml"

        state = k3s.create(_k3s_config(kubeconfig_path=str(path)))

        assert path.read_text() == state.kubeconfig
        assert (path.stat().st_mode & 0o777) == 0o600

    def test_unreachable_worker_aborts_before_install(self, fleet, k3s):
        """Test nothing is installed when a node never answers SSH."""
        fleet.unreachable.add("10.0.0.11")

        with pytest.raises(WaitTimeoutError, match="SSH on 10.0.0.11"):
            k3s.create(_k3s_config(install_timeout=0.05))
        assert not any("k3s-install.sh" in c for _, c in fleet.calls)

    def test_worker_not_ready_aborts(self, fleet, k3s):
        fleet.host("10.0.0.11").ready = False

        with pytest.raises(WaitTimeoutError, match="turing2"):
            k3s.create(_k3s_config(install_timeout=0.1))

    def test_addons_deployed(self, helm, addons, k3s):
        state = k3s.create(_k3s_config(load_balancer=LB, ingress=IngressSpec()))

        assert helm.chart_names() == ["metallb/metallb", "ingress-nginx/ingress-nginx"]
        assert addons.kubeconfigs == [state.kubeconfig]

    def test_addon_failure_aborts(self, helm, k3s):
        """Test a failing chart fails the whole K3s create."""
        helm.failures.add("metallb/metallb")

        with pytest.raises(CommandError):
            k3s.create(_k3s_config(load_balancer=LB))

    def test_version_failure_is_warning(self, fleet, k3s):
        fleet.host("10.0.0.10").failures["k3s --version"] = CommandError("exit 127")

        state = k3s.create(_k3s_config())

        assert state.status == ClusterStatus.READY
        assert state.version == ""
        assert "version lookup failed" in state.warnings[0]


class TestK3sRead:
    """Tests for refreshing K3s state."""

    def test_read_ready(self, k3s):
        config = _k3s_config()
        state = k3s.create(config)

        refreshed = k3s.read(config, state)

        assert refreshed.status == ClusterStatus.READY
        assert refreshed.node_names == ["turing1", "turing2"]

    def test_read_missing_node_is_degraded(self, fleet, k3s):
        """Test fewer nodes than described reports degraded."""
        config = _k3s_config()
        state = k3s.create(config)
        fleet.hosts["10.0.0.11"].agent_installed = False

        assert k3s.read(config, state).status == ClusterStatus.DEGRADED

    def test_kubectl_warning_does_not_count_as_nodes(self, fleet, k3s):
        """Test a warning line ahead of the node list cannot mask a lost worker."""
        config = _k3s_config()
        state = k3s.create(config)
        fleet.hosts["10.0.0.11"].agent_installed = False
        fleet.kubectl_warning = (
            "W0101 00:00:00.000000    1234 memcache.go:287] warning: couldn't get resource list"
        )

        refreshed = k3s.read(config, state)

        assert refreshed.status == ClusterStatus.DEGRADED
        assert refreshed.node_names == ["turing1"]

    def test_read_uninstalled(self, k3s):
        """Test a server without K3s means the cluster is gone."""
        assert k3s.read(_k3s_config(), ClusterState()) is None

    def test_read_unreachable(self, fleet, k3s):
        fleet.unreachable.add("10.0.0.10")

        state = k3s.read(_k3s_config(), ClusterState(status=ClusterStatus.READY))

        assert state.status == ClusterStatus.DEGRADED
        assert "control plane unreachable" in state.warnings[0]


class TestK3sUpdate:
    """Tests for in-place K3s updates."""

    def test_node_change_requires_replacement(self, k3s):
        old = _k3s_config()
        with pytest.raises(ReplacementRequired) as exc:
            k3s.update(old, replace(old, workers=()), ClusterState())
        assert exc.value.fields == ["workers"]

    def test_addon_added(self, helm, k3s):
        old = _k3s_config()
        state = k3s.create(old)

        k3s.update(old, replace(old, load_balancer=LB), state)

        assert helm.chart_names() == ["metallb/metallb"]

    def test_addon_removed(self, helm, k3s):
        """Test switching an add-on off uninstalls it."""
        old = _k3s_config(load_balancer=LB, ingress=IngressSpec())
        state = k3s.create(old)

        k3s.update(old, replace(old, ingress=None), state)

        assert helm.uninstalled == [("ingress-nginx", "ingress-nginx")]

    def test_kubeconfig_moved(self, tmp_path, k3s):
        first, second = tmp_path / "a.yaml", tmp_path / "b.yaml"
        old = _k3s_config(kubeconfig_path=str(first))
        state = k3s.create(old)

        k3s.update(old, replace(old, kubeconfig_path=str(second)), state)

        assert not first.exists()
        assert second.read_text() == state.kubeconfig


class TestK3sDelete:
    """Tests for tearing down K3s."""

    def test_agents_before_server(self, fleet, k3s):
        config = _k3s_config()
        k3s.create(config)

        assert k3s.delete(config) == []

        uninstalls = [h for h, c in fleet.calls if c.endswith("uninstall.sh")]
        assert uninstalls == ["10.0.0.11", "10.0.0.10"]

    def test_agent_failure_is_warning(self, fleet, k3s):
        """Test an unreachable worker does not block server removal."""
        config = _k3s_config()
        k3s.create(config)
        fleet.unreachable.add("10.0.0.11")

        warnings = k3s.delete(config)

        assert "agent 10.0.0.11 uninstall failed" in warnings[0]
        assert not fleet.hosts["10.0.0.10"].server_installed

    def test_server_failure_propagates(self, fleet, k3s):
        fleet.unreachable.add("10.0.0.10")
        with pytest.raises(ConnectivityError):
            k3s.delete(_k3s_config(workers=()))


class TestK3sImport:
    """Tests for adopting an existing K3s server."""

    def test_import(self, fleet, k3s):
        node = make_node("10.0.0.10")
        host = fleet.host("10.0.0.10")
        host.server_installed = True
        host.node_name = "turing1"
        fleet.token = "s3cret"

        config, state = k3s.import_cluster("adopted", node)

        assert config.version == "v1.29.4+k3s1"
        assert state.token == "s3cret"
        assert state.node_names == ["turing1"]
        assert state.status == ClusterStatus.READY
        assert "127.0.0.1" not in state.kubeconfig
        assert state.api_endpoint == "https://10.0.0.10:6443"

    def test_import_not_installed(self, k3s):
        with pytest.raises(ConfigError, match="not installed"):
            k3s.import_cluster("adopted", make_node("10.0.0.10"))


class TestTalosCreate:
    """Tests for creating Talos clusters."""

    def test_create_writes_artifacts(self, tmp_path, talos):
        """Test kubeconfig, talosconfig and secrets land owner-only."""
        paths = {
            "kubeconfig_path": str(tmp_path / "kubeconfig"),
            "talosconfig_path": str(tmp_path / "talosconfig"),
            "secrets_path": str(tmp_path / "secrets.yaml"),
        }

        state = talos.create(_talos_config(**paths))

        assert state.status == ClusterStatus.READY
        assert (tmp_path / "talosconfig").read_text() == state.talosconfig
        assert (tmp_path / "secrets.yaml").read_text() == state.secrets_yaml
        assert ((tmp_path / "kubeconfig").stat().st_mode & 0o777) == 0o600

    def test_artifact_failure_is_warning(self, tmp_path, talos):
        blocker = tmp_path / "file"
        blocker.write_text("x")

        state = talos.create(_talos_config(kubeconfig_path=str(blocker / "kubeconfig")))

        assert state.status == ClusterStatus.READY
        assert "could not write" in state.warnings[0]

    def test_addon_failure_is_warning(self, helm, talos):
        """Test a failing chart leaves a usable Talos cluster."""
        helm.failures.add("metallb/metallb")

        state = talos.create(_talos_config(load_balancer=LB))

        assert state.status == ClusterStatus.READY
        assert state.kubeconfig
        assert "add-on deployment failed" in state.warnings[0]

    def test_workdir_removed(self, talosctl, talos):
        talos.create(_talos_config())
        assert not talosctl.workdirs[0].exists()


class TestTalosLifecycle:
    """Tests for reading, updating and deleting Talos clusters."""

    def test_read_without_talosconfig(self, talos):
        assert talos.read(_talos_config(), TalosClusterState()) is None

    def test_read_health(self, talosctl, talos):
        state = TalosClusterState(talosconfig="ctx", control_plane_ips=["10.0.0.20"])
        talosctl.healthy = False

        assert talos.read(_talos_config(), state).status == ClusterStatus.DEGRADED

    def test_update_requires_replacement(self, talos):
        old = _talos_config()
        with pytest.raises(ReplacementRequired):
            talos.update(old, replace(old, install_disk="/dev/sda"), TalosClusterState())

    def test_update_addons(self, helm, talos):
        old = _talos_config()
        talos.update(old, replace(old, ingress=IngressSpec()), TalosClusterState(kubeconfig="kc"))
        assert helm.chart_names() == ["ingress-nginx/ingress-nginx"]

    def test_delete_resets_workers_first(self, tmp_path, talosctl, talos):
        kubeconfig = tmp_path / "kubeconfig"
        kubeconfig.write_text("kc")
        config = _talos_config(kubeconfig_path=str(kubeconfig))
        state = TalosClusterState(
            talosconfig="ctx",
            control_plane_ips=["10.0.0.20"],
            worker_ips=["10.0.0.21", "10.0.0.22"],
        )

        assert talos.delete(config, state) == []

        assert talosctl.reset_order == ["10.0.0.21", "10.0.0.22", "10.0.0.20"]
        assert not kubeconfig.exists()

    def test_delete_reports_failures(self, talosctl, talos):
        talosctl.reset_failures["10.0.0.21"] = "permission denied"
        state = TalosClusterState(
            talosconfig="ctx", control_plane_ips=["10.0.0.20"], worker_ips=["10.0.0.21"]
        )

        warnings = talos.delete(_talos_config(), state)

        assert len(warnings) == 1
        assert talosctl.reset_order == ["10.0.0.21", "10.0.0.20"]
