"""Cluster lifecycle: create, read, update, delete and import.

Orchestrators sequence the provisioners, persist artifacts and decide per
backend which failures abort and which leave a usable cluster with warnings.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager

import structlog

from .addons import AddonDeployer
from .errors import (
    K3S_POLICY,
    TALOS_POLICY,
    ClusterError,
    ConfigError,
    ErrorAction,
    ErrorPolicy,
    Phase,
    ReplacementRequired,
)
from .k3s import K3sProvisioner, generate_cluster_token
from .kubeconfig import extract_server, temporary_kubeconfig
from .models import (
    AnyClusterConfig,
    ClusterConfig,
    ClusterState,
    ClusterStatus,
    IngressSpec,
    LoadBalancerSpec,
    NodeConfig,
    TalosClusterConfig,
    TalosClusterState,
    replacement_fields,
)
from .parsing import parse_server_token
from .polling import Poller
from .shared.paths import remove_file, write_private_file
from .talos import TalosProvisioner
from .transport.api import APIReachability, KubeAPIReachability, build_http_client
from .transport.helm import HelmCLI
from .transport.kubectl import KubectlClient
from .transport.ssh import ExecutorFactory, ParamikoExecutor, wait_for_ssh

logger = structlog.get_logger(__name__)

# kubeconfig text -> deployer bound to that cluster
AddonFactory = Callable[[str], AbstractContextManager[AddonDeployer]]


def make_addon_factory(
    poller: Poller,
    helm_binary: str = "helm",
    kubectl_binary: str = "kubectl",
    ready_timeout: float = 120,
) -> AddonFactory:
    """Build the default factory: helm and kubectl against a temp kubeconfig."""

    @contextmanager
    def _factory(kubeconfig: str) -> Iterator[AddonDeployer]:
        with temporary_kubeconfig(kubeconfig) as path:
            yield AddonDeployer(
                HelmCLI(path, binary=helm_binary),
                KubectlClient(path, binary=kubectl_binary),
                poller=poller,
                ready_timeout=ready_timeout,
            )

    return _factory


def _enabled(addon: LoadBalancerSpec | IngressSpec | None) -> bool:
    return addon is not None and addon.enabled


def addons_changed(old: AnyClusterConfig, new: AnyClusterConfig) -> bool:
    return old.load_balancer != new.load_balancer or old.ingress != new.ingress


def apply_addon_changes(
    deployer: AddonDeployer, old: AnyClusterConfig, new: AnyClusterConfig
) -> None:
    """Remove add-ons that were switched off, then (re)deploy enabled ones."""
    if _enabled(old.ingress) and not _enabled(new.ingress):
        deployer.remove_ingress()
    if _enabled(old.load_balancer) and not _enabled(new.load_balancer):
        deployer.remove_load_balancer()
    deployer.deploy(new.load_balancer, new.ingress)


def _handle(
    policy: ErrorPolicy, phase: Phase, error: Exception, warnings: list[str], what: str
) -> None:
    """Record a tolerated failure as a warning; re-raise anything else."""
    if policy.classify(error, phase) != ErrorAction.TOLERATE:
        raise error
    message = f"{what}: {error}"
    logger.warning(message)
    warnings.append(message)


class K3sClusterOrchestrator:
    """Lifecycle of a K3s cluster (one server, serial agent joins)."""

    policy = K3S_POLICY

    def __init__(
        self,
        executor_factory: ExecutorFactory | None = None,
        api_check: APIReachability | None = None,
        addon_factory: AddonFactory | None = None,
        poller: Poller | None = None,
    ):
        self.poller = poller or Poller()
        self.executor_factory = executor_factory or ParamikoExecutor
        self.provisioner = K3sProvisioner(self.executor_factory, self.poller)
        self.api_check = api_check or KubeAPIReachability(build_http_client())
        self.addon_factory = addon_factory or make_addon_factory(self.poller)

    def create(self, config: ClusterConfig) -> ClusterState:
        """Install the server, join agents, deploy add-ons.

        Any failure aborts; the caller decides whether to clean up.

        Returns:
            Computed state with status ready.
        """
        log = logger.bind(cluster=config.name)
        token = config.token or generate_cluster_token()
        config = dataclasses.replace(config, token=token)
        state = ClusterState(
            token=token, api_endpoint=config.api_endpoint, status=ClusterStatus.BOOTSTRAPPING
        )
        cp = config.control_plane
        timeout = config.install_timeout

        for node in (cp, *config.workers):
            wait_for_ssh(self.executor_factory, node, timeout, self.poller)

        log.info("Installing control plane", host=cp.host)
        self.provisioner.install_control_plane(cp, config, timeout)
        state.node_token = self.provisioner.get_node_token(cp)
        state.kubeconfig = self.provisioner.get_kubeconfig(cp)
        if config.kubeconfig_path:
            write_private_file(config.kubeconfig_path, state.kubeconfig)

        for worker in config.workers:
            self.poller.check_cancelled(f"joining worker {worker.host}")
            log.info("Joining worker", host=worker.host)
            self.provisioner.install_agent(
                worker, config.api_endpoint, state.node_token, config.version
            )
            self.provisioner.wait_for_node_ready(cp, worker, timeout)

        self.api_check.wait_until_reachable(config.api_endpoint, timeout, self.poller)

        if _enabled(config.load_balancer) or _enabled(config.ingress):
            with self.addon_factory(state.kubeconfig) as deployer:
                deployer.deploy(config.load_balancer, config.ingress)

        try:
            state.version = self.provisioner.get_version(cp)
        except ClusterError as e:
            _handle(self.policy, Phase.HEALTH, e, state.warnings, "version lookup failed")
        state.node_names = self._node_names(cp, state)

        state.status = ClusterStatus.READY
        log.info("Cluster ready", endpoint=config.api_endpoint)
        return state

    def _node_names(self, cp: NodeConfig, state: ClusterState) -> list[str]:
        try:
            return self.provisioner.get_cluster_nodes(cp)
        except ClusterError as e:
            _handle(self.policy, Phase.HEALTH, e, state.warnings, "node listing failed")
            return []

    def read(self, config: ClusterConfig, state: ClusterState) -> ClusterState | None:
        """Refresh state from the server.

        Returns:
            Updated state, or None if K3s is gone from the control plane.
        """
        cp = config.control_plane
        state.warnings = []
        if not self.provisioner.is_reachable(cp):
            state.warnings.append(f"control plane unreachable over SSH ({cp.host})")
            state.status = ClusterStatus.DEGRADED
            return state
        try:
            if not self.provisioner.check_installed(cp):
                logger.info("K3s no longer installed", cluster=config.name)
                return None
        except ClusterError as e:
            _handle(self.policy, Phase.HEALTH, e, state.warnings, "control plane unreachable")
            state.status = ClusterStatus.DEGRADED
            return state

        try:
            nodes = self.provisioner.get_cluster_nodes(cp)
        except ClusterError as e:
            _handle(self.policy, Phase.HEALTH, e, state.warnings, "node listing failed")
            state.status = ClusterStatus.DEGRADED
            return state

        state.node_names = nodes
        expected = 1 + len(config.workers)
        state.status = ClusterStatus.READY if len(nodes) >= expected else ClusterStatus.DEGRADED

        try:
            state.kubeconfig = self.provisioner.get_kubeconfig(cp)
            state.version = self.provisioner.get_version(cp) or state.version
        except ClusterError as e:
            _handle(self.policy, Phase.HEALTH, e, state.warnings, "refresh failed")
        return state

    def update(self, old: ClusterConfig, new: ClusterConfig, state: ClusterState) -> ClusterState:
        """Apply in-place changes.

        Raises:
            ReplacementRequired: Nodes, name, version, CIDRs or token changed.
        """
        fields = replacement_fields(old, new)
        if fields:
            raise ReplacementRequired(fields)

        if addons_changed(old, new):
            logger.info("Updating add-ons", cluster=new.name)
            with self.addon_factory(state.kubeconfig) as deployer:
                apply_addon_changes(deployer, old, new)

        if old.kubeconfig_path != new.kubeconfig_path:
            if new.kubeconfig_path:
                write_private_file(new.kubeconfig_path, state.kubeconfig)
            remove_file(old.kubeconfig_path)
        return state

    def delete(self, config: ClusterConfig, state: ClusterState | None = None) -> list[str]:
        """Uninstall agents, then the server, then remove artifacts.

        Agent failures are warnings; a server failure propagates.

        Returns:
            Warnings collected along the way.
        """
        warnings: list[str] = []
        for worker in config.workers:
            try:
                self.provisioner.uninstall_agent(worker)
            except ClusterError as e:
                message = f"agent {worker.host} uninstall failed"
                _handle(self.policy, Phase.TEARDOWN, e, warnings, message)
        self.provisioner.uninstall_control_plane(config.control_plane)
        remove_file(config.kubeconfig_path)
        return warnings

    def import_cluster(self, name: str, node: NodeConfig) -> tuple[ClusterConfig, ClusterState]:
        """Adopt a K3s server installed by other means.

        Raises:
            ConfigError: K3s is not installed on the node.
        """
        if not self.provisioner.check_installed(node):
            raise ConfigError(f"K3s is not installed on {node.host}")

        version = self.provisioner.get_version(node)
        config = ClusterConfig(name=name, control_plane=node, version=version)
        node_token = self.provisioner.get_node_token(node)
        kubeconfig = self.provisioner.get_kubeconfig(node)
        state = ClusterState(
            token=parse_server_token(node_token),
            node_token=node_token,
            kubeconfig=kubeconfig,
            api_endpoint=extract_server(kubeconfig),
            version=version,
        )
        state.node_names = self._node_names(node, state)
        state.status = ClusterStatus.READY if state.node_names else ClusterStatus.DEGRADED
        logger.info("Imported K3s cluster", cluster=name, nodes=len(state.node_names))
        return config, state


class TalosClusterOrchestrator:
    """Lifecycle of a Talos cluster; add-on and artifact failures are warnings."""

    policy = TALOS_POLICY

    def __init__(
        self,
        provisioner_factory: Callable[[], TalosProvisioner] | None = None,
        addon_factory: AddonFactory | None = None,
        poller: Poller | None = None,
    ):
        self.poller = poller or Poller()
        self.provisioner_factory = provisioner_factory or (
            lambda: TalosProvisioner(poller=self.poller)
        )
        self.addon_factory = addon_factory or make_addon_factory(self.poller)

    def create(
        self, config: TalosClusterConfig, secrets_yaml: str | None = None
    ) -> TalosClusterState:
        """Provision nodes, write artifacts, deploy add-ons.

        Args:
            config: Cluster description.
            secrets_yaml: Secrets from an earlier run to reuse.
        """
        with self.provisioner_factory() as provisioner:
            state = provisioner.provision_cluster(config, secrets_yaml)

        self._write_artifacts(config, state)

        if _enabled(config.load_balancer) or _enabled(config.ingress):
            try:
                with self.addon_factory(state.kubeconfig) as deployer:
                    deployer.deploy(config.load_balancer, config.ingress)
            except (ClusterError, OSError) as e:
                _handle(self.policy, Phase.ADDON, e, state.warnings, "add-on deployment failed")
        return state

    def _write_artifacts(self, config: TalosClusterConfig, state: TalosClusterState) -> None:
        artifacts = (
            (config.kubeconfig_path, state.kubeconfig),
            (config.talosconfig_path, state.talosconfig),
            (config.secrets_path, state.secrets_yaml),
        )
        for path, content in artifacts:
            if not path:
                continue
            try:
                write_private_file(path, content)
            except OSError as e:
                _handle(self.policy, Phase.ARTIFACT, e, state.warnings, f"could not write {path}")

    def read(
        self, config: TalosClusterConfig, state: TalosClusterState
    ) -> TalosClusterState | None:
        """Check cluster health.

        Returns:
            Updated state, or None if no talosconfig was ever recorded.
        """
        if not state.talosconfig:
            return None
        ips = state.control_plane_ips
        target = ips[0] if ips else config.first_control_plane
        with self.provisioner_factory() as provisioner:
            state.status = provisioner.check_cluster_health(state.talosconfig, target)
        return state

    def update(
        self, old: TalosClusterConfig, new: TalosClusterConfig, state: TalosClusterState
    ) -> TalosClusterState:
        """Re-apply add-on changes; everything else needs a new cluster.

        Raises:
            ReplacementRequired: Any non add-on field changed.
        """
        fields = replacement_fields(old, new)
        if fields:
            raise ReplacementRequired(fields)
        if addons_changed(old, new):
            state.warnings = []
            try:
                with self.addon_factory(state.kubeconfig) as deployer:
                    apply_addon_changes(deployer, old, new)
            except (ClusterError, OSError) as e:
                _handle(self.policy, Phase.ADDON, e, state.warnings, "add-on update failed")
        return state

    def delete(self, config: TalosClusterConfig, state: TalosClusterState) -> list[str]:
        """Reset every node (workers first) and remove artifacts.

        Returns:
            Per-node reset failures, as warnings.
        """
        warnings: list[str] = []
        if state.talosconfig:
            with self.provisioner_factory() as provisioner:
                warnings = provisioner.destroy_cluster(
                    state.talosconfig, state.control_plane_ips, state.worker_ips
                )
        for path in (config.kubeconfig_path, config.talosconfig_path, config.secrets_path):
            try:
                remove_file(path)
            except OSError as e:
                _handle(self.policy, Phase.ARTIFACT, e, warnings, f"could not remove {path}")
        return warnings
