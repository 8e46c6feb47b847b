"""Cluster add-ons: MetalLB load balancer and NGINX ingress.

Charts are installed through a ChartInstaller; MetalLB's address pool is
applied as manifests through a KubeClient once its CRDs are served.
"""

from __future__ import annotations

import ipaddress
from typing import Any

import structlog
import yaml

from .errors import ConfigError
from .models import IngressSpec, LoadBalancerSpec
from .parsing import pod_phase
from .polling import Poller
from .transport.helm import (
    DEFAULT_CHART_TIMEOUT,
    ChartInstaller,
    ChartSpec,
    Release,
    ReleaseStatus,
    wait_for_release,
)
from .transport.kubectl import KubeClient

logger = structlog.get_logger(__name__)

METALLB_REPO = ("metallb", "https://metallb.github.io/metallb")
METALLB_CHART = "metallb/metallb"
METALLB_NAMESPACE = "metallb-system"
METALLB_RELEASE = "metallb"
METALLB_CRD = "ipaddresspools.metallb.io"
METALLB_CONTROLLER_SELECTOR = "app.kubernetes.io/component=controller"
METALLB_API_VERSION = "metallb.io/v1beta1"
POOL_NAME = "default-pool"
L2_ADVERTISEMENT_NAME = "default-l2"

INGRESS_REPO = ("ingress-nginx", "https://kubernetes.github.io/ingress-nginx")
INGRESS_CHART = "ingress-nginx/ingress-nginx"
INGRESS_NAMESPACE = "ingress-nginx"
INGRESS_RELEASE = "ingress-nginx"

DEFAULT_READY_TIMEOUT = 120


def first_address(ip_range: str) -> str:
    """First usable address of a pool definition.

    Accepts `a-b` ranges, CIDR blocks (first address of the network) and
    single addresses.

    Raises:
        ConfigError: Not a valid range, CIDR or address.
    """
    value = ip_range.strip()
    try:
        if "-" in value:
            start = value.split("-", 1)[0].strip()
            return str(ipaddress.ip_address(start))
        if "/" in value:
            return str(ipaddress.ip_network(value, strict=False).network_address)
        return str(ipaddress.ip_address(value))
    except ValueError as e:
        raise ConfigError(f"Invalid IP range {ip_range!r}: {e}") from e


def resolve_ingress_ip(ingress: IngressSpec | None, load_balancer: LoadBalancerSpec | None) -> str:
    """Ingress address: explicit IP, else first pool address, else empty."""
    if ingress and ingress.ip:
        return ingress.ip
    if load_balancer and load_balancer.enabled and load_balancer.ip_range:
        return first_address(load_balancer.ip_range)
    return ""


def build_metallb_pool(ip_range: str) -> list[dict[str, Any]]:
    """IPAddressPool and L2Advertisement announcing it."""
    metadata = {"namespace": METALLB_NAMESPACE}
    return [
        {
            "apiVersion": METALLB_API_VERSION,
            "kind": "IPAddressPool",
            "metadata": {"name": POOL_NAME, **metadata},
            "spec": {"addresses": [ip_range]},
        },
        {
            "apiVersion": METALLB_API_VERSION,
            "kind": "L2Advertisement",
            "metadata": {"name": L2_ADVERTISEMENT_NAME, **metadata},
            "spec": {"ipAddressPools": [POOL_NAME]},
        },
    ]


def build_ingress_values(load_balancer_ip: str = "") -> dict[str, Any]:
    service: dict[str, Any] = {"type": "LoadBalancer"}
    if load_balancer_ip:
        service["loadBalancerIP"] = load_balancer_ip
    return {"controller": {"ingressClassResource": {"default": True}, "service": service}}


class AddonDeployer:
    """Install add-ons into one cluster."""

    def __init__(
        self,
        helm: ChartInstaller,
        kube: KubeClient,
        poller: Poller | None = None,
        chart_timeout: int = DEFAULT_CHART_TIMEOUT,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
    ):
        self.helm = helm
        self.kube = kube
        self.poller = poller or Poller()
        self.chart_timeout = chart_timeout
        self.ready_timeout = ready_timeout

    def _install(self, spec: ChartSpec) -> Release:
        """Install or upgrade a chart, then poll until the release is deployed."""
        release = self.helm.install_or_upgrade(spec)
        if release.status == ReleaseStatus.DEPLOYED:
            return release
        return wait_for_release(
            self.helm, spec.release_name, spec.namespace, self.chart_timeout, self.poller
        )

    def deploy_load_balancer(self, ip_range: str, chart_version: str = "") -> Release:
        """Install MetalLB and announce `ip_range` over layer 2.

        Raises:
            CommandError: helm or kubectl failed.
            WaitTimeoutError: MetalLB CRDs or controller never came up.
        """
        first_address(ip_range)
        self.helm.add_repository(*METALLB_REPO)
        release = self._install(
            ChartSpec(
                release_name=METALLB_RELEASE,
                chart=METALLB_CHART,
                namespace=METALLB_NAMESPACE,
                version=chart_version,
                timeout=self.chart_timeout,
            )
        )
        self.wait_for_load_balancer()
        manifest = yaml.safe_dump_all(build_metallb_pool(ip_range), sort_keys=False)
        self.kube.apply(manifest)
        logger.info("MetalLB deployed", ip_range=ip_range)
        return release

    def wait_for_load_balancer(self) -> int:
        """Poll until the pool CRD is served and the controller pod runs."""

        def _ready() -> bool:
            self.kube.get("crd", METALLB_CRD)
            phase = self.kube.get(
                "pods",
                namespace=METALLB_NAMESPACE,
                selector=METALLB_CONTROLLER_SELECTOR,
                output="jsonpath={.items[0].status.phase}",
            )
            return pod_phase(phase) == "Running"

        return self.poller.wait(_ready, self.ready_timeout, description="MetalLB controller")

    def deploy_ingress(self, load_balancer_ip: str = "", chart_version: str = "") -> Release:
        """Install the NGINX ingress controller as the default ingress class."""
        self.helm.add_repository(*INGRESS_REPO)
        release = self._install(
            ChartSpec(
                release_name=INGRESS_RELEASE,
                chart=INGRESS_CHART,
                namespace=INGRESS_NAMESPACE,
                version=chart_version,
                values=build_ingress_values(load_balancer_ip),
                timeout=self.chart_timeout,
            )
        )
        logger.info("Ingress controller deployed", load_balancer_ip=load_balancer_ip or None)
        return release

    def remove_load_balancer(self) -> None:
        self.helm.uninstall(METALLB_RELEASE, METALLB_NAMESPACE)

    def remove_ingress(self) -> None:
        self.helm.uninstall(INGRESS_RELEASE, INGRESS_NAMESPACE)

    def deploy(
        self, load_balancer: LoadBalancerSpec | None, ingress: IngressSpec | None
    ) -> list[str]:
        """Deploy every enabled add-on, load balancer first.

        Returns:
            Names of the add-ons deployed.
        """
        deployed = []
        if load_balancer and load_balancer.enabled:
            self.deploy_load_balancer(load_balancer.ip_range, load_balancer.chart_version)
            deployed.append("metallb")
        if ingress and ingress.enabled:
            self.deploy_ingress(
                resolve_ingress_ip(ingress, load_balancer), ingress.chart_version
            )
            deployed.append("ingress")
        return deployed
