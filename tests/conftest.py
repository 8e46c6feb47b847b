"""Shared test fixtures for turingpi-cluster tests."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from fakes import (
    FakeAddons,
    FakeAPIReachability,
    FakeChartInstaller,
    FakeFleet,
    FakeKubeClient,
    FakeTalosctl,
    make_node,
)

from turingpi_cluster.models import NodeConfig
from turingpi_cluster.polling import Poller


@pytest.fixture
def poller() -> Poller:
    return Poller(interval=0.01)


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet()


@pytest.fixture
def talosctl() -> FakeTalosctl:
    return FakeTalosctl()


@pytest.fixture
def helm() -> FakeChartInstaller:
    return FakeChartInstaller()


@pytest.fixture
def kube() -> FakeKubeClient:
    return FakeKubeClient()


@pytest.fixture
def api_check() -> FakeAPIReachability:
    return FakeAPIReachability()


@pytest.fixture
def addons(helm, kube, poller) -> FakeAddons:
    return FakeAddons(helm, kube, poller)


@pytest.fixture
def node_factory() -> Callable[..., NodeConfig]:
    return make_node
