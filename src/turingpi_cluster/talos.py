"""Talos Linux provisioning through talosctl.

A provisioner owns a private temporary work directory holding generated
secrets, machine configs and the talosconfig for one run. Use it as a context
manager so the directory is removed afterwards.
"""

from __future__ import annotations

import shutil
import tempfile
from collections.abc import Callable
from pathlib import Path

import structlog
import yaml

from .errors import (
    TALOS_POLICY,
    ClusterError,
    ErrorAction,
    Phase,
    WaitTimeoutError,
    is_expected_reset_error,
)
from .models import ClusterStatus, TalosClusterConfig, TalosClusterState
from .parsing import has_etcd_members, parse_etcd_members, service_running
from .polling import Poller
from .shared.paths import write_private_file
from .transport.talosctl import SubprocessTalosctl, TalosctlRunner

logger = structlog.get_logger(__name__)

HEALTH_WAIT_TIMEOUT = "10s"
CONTROL_PLANE_HOSTNAME = "turing-cp-{index}"
WORKER_HOSTNAME = "turing-w-{index}"

RunnerFactory = Callable[[Path], TalosctlRunner]


def generate_patch(
    hostname: str, allow_scheduling: bool = False, control_plane: bool = False
) -> str:
    """Build the machine config patch setting a node's hostname.

    Control planes may also be opened to regular workloads.
    """
    patch: dict = {"machine": {"network": {"hostname": hostname}}}
    if control_plane and allow_scheduling:
        patch["cluster"] = {"allowSchedulingOnControlPlanes": True}
    return yaml.safe_dump(patch, default_flow_style=False)


class TalosProvisioner:
    """Drive talosctl through the lifecycle of one Talos cluster."""

    def __init__(
        self,
        runner_factory: RunnerFactory | None = None,
        poller: Poller | None = None,
        binary: str = "talosctl",
    ):
        """Initialize provisioner and create its work directory.

        Args:
            runner_factory: Builds a TalosctlRunner bound to a work directory.
            poller: Interval and cancellation for readiness waits.
            binary: talosctl executable for the default runner.
        """
        self.workdir = Path(tempfile.mkdtemp(prefix="turingpi-talos-"))
        self.workdir.chmod(0o700)
        factory = runner_factory or (lambda workdir: SubprocessTalosctl(workdir, binary))
        self.runner = factory(self.workdir)
        self.poller = poller or Poller()

    def __enter__(self) -> TalosProvisioner:
        return self

    def __exit__(self, *exc) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        """Remove the work directory."""
        shutil.rmtree(self.workdir, ignore_errors=True)

    def _talosctl(self, talosconfig: str | Path, node_ip: str, *args: str) -> str:
        """Run an authenticated talosctl command against one node."""
        return self.runner.run(
            "--talosconfig", str(talosconfig), "--endpoints", node_ip, "--nodes", node_ip, *args
        )

    def _write_talosconfig(self, content: str) -> Path:
        return write_private_file(self.workdir / "talosconfig", content)

    # ── Config generation ──────────────────────────────────────────

    def generate_secrets(self, output_path: str | Path) -> None:
        self.runner.run("gen", "secrets", "-o", str(output_path))

    def generate_config(
        self,
        secrets_path: str | Path,
        cluster_name: str,
        endpoint: str,
        install_disk: str,
        output_dir: str | Path,
        kubernetes_version: str = "",
    ) -> None:
        """Generate controlplane.yaml, worker.yaml and talosconfig."""
        args = [
            "gen",
            "config",
            "--with-secrets",
            str(secrets_path),
            cluster_name,
            endpoint,
            "--install-disk",
            install_disk,
            "--output-dir",
            str(output_dir),
        ]
        if kubernetes_version:
            args.extend(["--kubernetes-version", kubernetes_version])
        self.runner.run(*args)

    def patch_config(self, config_path: str | Path, patch: str, output_path: str | Path) -> None:
        patch_file = Path(output_path).with_suffix(".patch.yaml")
        write_private_file(patch_file, patch)
        self.runner.run(
            "machineconfig",
            "patch",
            str(config_path),
            "--patch",
            f"@{patch_file}",
            "--output",
            str(output_path),
        )

    def apply_config(
        self,
        node_ip: str,
        config_path: str | Path,
        insecure: bool = True,
        talosconfig: str | Path | None = None,
    ) -> None:
        """Push a machine config to a node.

        Nodes in maintenance mode only accept `insecure` applies.
        """
        logger.info(f"Applying machine config to {node_ip}")
        if insecure:
            self.runner.run(
                "apply-config", "--nodes", node_ip, "--file", str(config_path), "--insecure"
            )
        else:
            self._talosctl(talosconfig or "", node_ip, "apply-config", "--file", str(config_path))

    # ── Bootstrap ──────────────────────────────────────────────────

    def is_bootstrapped(self, talosconfig: str | Path, node_ip: str) -> bool:
        """Check for etcd membership. Errors mean "not yet"."""
        try:
            output = self._talosctl(talosconfig, node_ip, "etcd", "status")
        except ClusterError as e:
            logger.debug(f"etcd status on {node_ip} unavailable: {e}")
            return False
        return has_etcd_members(output)

    def bootstrap(self, talosconfig: str | Path, node_ip: str) -> bool:
        """Bootstrap etcd on a node unless it already is.

        Returns:
            True if bootstrap ran, False if the cluster was already bootstrapped.
        """
        if self.is_bootstrapped(talosconfig, node_ip):
            logger.info(f"Cluster already bootstrapped on {node_ip}")
            return False
        logger.info(f"Bootstrapping etcd on {node_ip}")
        self._talosctl(talosconfig, node_ip, "bootstrap")
        return True

    def wait_for_node_api(self, talosconfig: str | Path, node_ip: str, timeout: float) -> int:
        """Poll until the node answers authenticated requests after its reboot."""

        def _answers() -> bool:
            self._talosctl(talosconfig, node_ip, "version")
            return True

        return self.poller.wait(
            _answers,
            timeout,
            description=f"Talos API on {node_ip}",
        )

    def _wait_for_service(
        self, talosconfig: str | Path, node_ip: str, service: str, timeout: float
    ) -> int:
        return self.poller.wait(
            lambda: service_running(self._talosctl(talosconfig, node_ip, "service", service)),
            timeout,
            description=f"{service} on {node_ip}",
        )

    def wait_for_api_server(self, talosconfig: str | Path, node_ip: str, timeout: float) -> int:
        return self._wait_for_service(talosconfig, node_ip, "kube-apiserver", timeout)

    def wait_for_node_ready(self, talosconfig: str | Path, node_ip: str, timeout: float) -> int:
        return self._wait_for_service(talosconfig, node_ip, "kubelet", timeout)

    def wait_for_health(self, talosconfig: str | Path, node_ip: str, timeout: float) -> int:
        def _healthy() -> bool:
            self._talosctl(talosconfig, node_ip, "health", "--wait-timeout", HEALTH_WAIT_TIMEOUT)
            return True

        return self.poller.wait(
            _healthy,
            timeout,
            description=f"cluster health via {node_ip}",
        )

    # ── Artifacts and queries ──────────────────────────────────────

    def get_kubeconfig(self, talosconfig: str | Path, node_ip: str, output_path: str | Path) -> str:
        """Fetch the admin kubeconfig into `output_path` and return it."""
        self._talosctl(talosconfig, node_ip, "kubeconfig", str(output_path), "--force")
        return Path(output_path).read_text()

    def get_cluster_members(self, talosconfig: str | Path, node_ip: str) -> list[str]:
        """Return etcd member IDs."""
        return parse_etcd_members(self._talosctl(talosconfig, node_ip, "etcd", "members"))

    def reset(self, talosconfig: str | Path, node_ip: str, graceful: bool = False) -> None:
        """Wipe a node and reboot it into maintenance mode."""
        args = ["reset", "--reboot"]
        if not graceful:
            args.append("--graceful=false")
        self._talosctl(talosconfig, node_ip, *args)

    # ── Lifecycle ──────────────────────────────────────────────────

    def provision_cluster(
        self, config: TalosClusterConfig, secrets_yaml: str | None = None
    ) -> TalosClusterState:
        """Build a cluster from nodes in maintenance mode.

        Control planes are configured first, the first one is bootstrapped
        exactly once, then workers join one at a time. A worker that does not
        come up in time is recorded with a warning; an apply failure aborts.

        Args:
            config: Cluster description.
            secrets_yaml: Previously generated secrets to reuse.

        Returns:
            State with secrets, talosconfig, kubeconfig and node lists.
        """
        log = logger.bind(cluster=config.name)
        state = TalosClusterState(status=ClusterStatus.BOOTSTRAPPING)

        secrets_path = self.workdir / "secrets.yaml"
        if secrets_yaml:
            write_private_file(secrets_path, secrets_yaml)
        else:
            log.info("Generating cluster secrets")
            self.generate_secrets(secrets_path)
        state.secrets_yaml = secrets_path.read_text()

        config_dir = self.workdir / "configs"
        config_dir.mkdir(mode=0o700, exist_ok=True)
        self.generate_config(
            secrets_path,
            config.name,
            config.endpoint,
            config.install_disk,
            config_dir,
            config.kubernetes_version,
        )
        talosconfig = config_dir / "talosconfig"
        state.talosconfig = talosconfig.read_text()

        for i, cp in enumerate(config.control_planes, start=1):
            self.poller.check_cancelled(f"configuring control plane {cp.host}")
            hostname = cp.hostname or CONTROL_PLANE_HOSTNAME.format(index=i)
            patched = self.workdir / f"controlplane-{i}.yaml"
            self.patch_config(
                config_dir / "controlplane.yaml",
                generate_patch(
                    hostname, config.allow_scheduling_on_control_plane, control_plane=True
                ),
                patched,
            )
            self.apply_config(cp.host, patched, insecure=True)
            state.control_plane_ips.append(cp.host)

        first_cp = config.first_control_plane
        self.wait_for_node_api(talosconfig, first_cp, config.bootstrap_timeout)
        self.bootstrap(talosconfig, first_cp)
        self.wait_for_api_server(talosconfig, first_cp, config.bootstrap_timeout)
        log.info("Kubernetes API server running")

        for i, worker in enumerate(config.workers, start=1):
            self.poller.check_cancelled(f"configuring worker {worker.host}")
            hostname = worker.hostname or WORKER_HOSTNAME.format(index=i)
            patched = self.workdir / f"worker-{i}.yaml"
            self.patch_config(config_dir / "worker.yaml", generate_patch(hostname), patched)
            self.apply_config(worker.host, patched, insecure=True)
            state.worker_ips.append(worker.host)
            try:
                self.wait_for_node_ready(talosconfig, worker.host, config.bootstrap_timeout)
            except WaitTimeoutError as e:
                if TALOS_POLICY.classify(e, Phase.HEALTH) != ErrorAction.TOLERATE:
                    raise
                message = f"worker {worker.host} not ready: {e}"
                log.warning(message)
                state.warnings.append(message)

        try:
            self.wait_for_health(talosconfig, first_cp, config.bootstrap_timeout)
            state.status = ClusterStatus.READY
        except WaitTimeoutError as e:
            log.warning(f"Cluster health check failed, continuing: {e}")
            state.warnings.append(f"health check failed: {e}")
            state.status = ClusterStatus.DEGRADED

        state.kubeconfig = self.get_kubeconfig(talosconfig, first_cp, self.workdir / "kubeconfig")
        state.api_endpoint = config.endpoint
        log.info("Talos cluster provisioned", status=state.status.value)
        return state

    def destroy_cluster(
        self, talosconfig: str, control_plane_ips: list[str], worker_ips: list[str]
    ) -> list[str]:
        """Reset every node, workers first.

        A node dropping the connection while it reboots counts as success.
        Other failures are logged and returned, never raised.

        Returns:
            One message per node that could not be reset.
        """
        path = self._write_talosconfig(talosconfig)
        failures: list[str] = []
        for role, ips in (("worker", worker_ips), ("control plane", control_plane_ips)):
            for ip in ips:
                try:
                    self.reset(path, ip, graceful=False)
                    logger.info(f"Reset {role} {ip}")
                except ClusterError as e:
                    if is_expected_reset_error(e):
                        logger.info(f"Reset {role} {ip} (node went down mid-call)")
                        continue
                    logger.warning(f"Failed to reset {role} {ip}: {e}")
                    failures.append(f"{role} {ip}: {e}")
        return failures

    def check_cluster_health(self, talosconfig: str, control_plane_ip: str) -> ClusterStatus:
        """Single health check; any failure reports degraded."""
        try:
            path = self._write_talosconfig(talosconfig)
            self._talosctl(path, control_plane_ip, "health", "--wait-timeout", HEALTH_WAIT_TIMEOUT)
        except (ClusterError, OSError) as e:
            logger.debug(f"Health check via {control_plane_ip} failed: {e}")
            return ClusterStatus.DEGRADED
        return ClusterStatus.READY
