"""Cluster lifecycle commands: create, read, apply, destroy, import-k3s, status."""

from __future__ import annotations

import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from ..config import CLIConfig
from ..errors import ClusterError, ReplacementRequired
from ..formatters import print_cluster, print_cluster_list, print_warnings, record_summary
from ..models import (
    AnyClusterConfig,
    ClusterConfig,
    NodeConfig,
    SSHCredentials,
    TalosClusterConfig,
    load_cluster_file,
)
from ..orchestrator import K3sClusterOrchestrator, TalosClusterOrchestrator, make_addon_factory
from ..polling import Poller
from ..state import ClusterRecord, StateStore
from ..talos import TalosProvisioner
from ..transport.api import KubeAPIReachability, build_http_client
from ..transport.ssh import ParamikoExecutor

Orchestrator = K3sClusterOrchestrator | TalosClusterOrchestrator


def build_orchestrator(
    config: AnyClusterConfig, cli_config: CLIConfig, poller: Poller
) -> Orchestrator:
    """Wire production transports for one backend."""
    addon_factory = make_addon_factory(
        poller,
        helm_binary=cli_config.helm,
        kubectl_binary=cli_config.kubectl,
        ready_timeout=cli_config.addon_timeout,
    )
    if isinstance(config, TalosClusterConfig):
        return TalosClusterOrchestrator(
            provisioner_factory=lambda: TalosProvisioner(poller=poller, binary=cli_config.talosctl),
            addon_factory=addon_factory,
            poller=poller,
        )
    return K3sClusterOrchestrator(
        executor_factory=ParamikoExecutor,
        api_check=KubeAPIReachability(build_http_client(cli_config.http_timeout)),
        addon_factory=addon_factory,
        poller=poller,
    )


def _fail(message: str) -> NoReturn:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _context(ctx: click.Context) -> tuple[CLIConfig, StateStore, Poller]:
    return ctx.obj["config"], ctx.obj["store"], ctx.obj["poller"]


def _load(file: str, cli_config: CLIConfig) -> tuple[AnyClusterConfig, dict[str, Any]]:
    try:
        config, raw = load_cluster_file(file)
    except ClusterError as e:
        _fail(str(e))
    # The CLI-wide install timeout applies when the description sets none
    if isinstance(config, ClusterConfig) and "install_timeout" not in raw:
        config = dataclasses.replace(config, install_timeout=cli_config.install_timeout)
    return config, raw


def _create(
    config: AnyClusterConfig, raw: dict[str, Any], cli_config: CLIConfig, poller: Poller
) -> ClusterRecord:
    orchestrator = build_orchestrator(config, cli_config, poller)
    if isinstance(config, TalosClusterConfig):
        secrets_yaml = None
        if config.secrets_path and Path(config.secrets_path).expanduser().exists():
            click.echo(f"  Reusing secrets from {config.secrets_path}")
            secrets_yaml = Path(config.secrets_path).expanduser().read_text()
        state = orchestrator.create(config, secrets_yaml)
    else:
        state = orchestrator.create(config)
    return ClusterRecord(config.name, config.backend.value, raw, state)


def _report(ctx: click.Context, record: ClusterRecord) -> None:
    if ctx.obj.get("json_output"):
        click.echo(json.dumps(record_summary(record), indent=2))
    else:
        print_cluster(record)
        print_warnings(record.state.warnings)


@click.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def create(ctx: click.Context, file: str) -> None:
    """Create the cluster described in FILE."""
    cli_config, store, poller = _context(ctx)
    config, raw = _load(file, cli_config)
    if store.exists(config.name):
        _fail(f"Cluster '{config.name}' already exists. Use: turingpi-cluster apply {file}")

    click.echo(f"Creating {config.backend.value} cluster '{config.name}'...")
    try:
        record = _create(config, raw, cli_config, poller)
    except ClusterError as e:
        _fail(str(e))
    store.save(record)
    click.echo(f"✓ Cluster '{config.name}' is {record.state.status.value}.")
    _report(ctx, record)


@click.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def read(ctx: click.Context, file: str) -> None:
    """Refresh the state of the cluster described in FILE."""
    cli_config, store, poller = _context(ctx)
    config, _ = _load(file, cli_config)
    try:
        record = store.load(config.name)
    except ClusterError as e:
        _fail(str(e))
    if record is None:
        _fail(f"Cluster '{config.name}' is not managed. Use: turingpi-cluster create {file}")

    stored = record.config
    try:
        state = build_orchestrator(stored, cli_config, poller).read(stored, record.state)
    except ClusterError as e:
        _fail(str(e))
    if state is None:
        store.delete(config.name)
        click.echo(f"Cluster '{config.name}' no longer exists; state removed.")
        return
    record.state = state
    store.save(record)
    _report(ctx, record)


@click.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--allow-replace",
    is_flag=True,
    help="Destroy and recreate the cluster when a change cannot be applied in place",
)
@click.pass_context
def apply(ctx: click.Context, file: str, allow_replace: bool) -> None:
    """Create the cluster in FILE, or bring an existing one in line with it."""
    cli_config, store, poller = _context(ctx)
    config, raw = _load(file, cli_config)
    try:
        record = store.load(config.name)
    except ClusterError as e:
        _fail(str(e))

    try:
        if record is None:
            click.echo(f"Creating {config.backend.value} cluster '{config.name}'...")
            record = _create(config, raw, cli_config, poller)
        else:
            old = record.config
            try:
                orchestrator = build_orchestrator(config, cli_config, poller)
                record.state = orchestrator.update(old, config, record.state)
                record.description = raw
                click.echo(f"✓ Cluster '{config.name}' updated.")
            except ReplacementRequired as e:
                if not allow_replace:
                    _fail(f"{e}. Re-run with --allow-replace to recreate it.")
                click.echo(f"Replacing cluster '{config.name}' ({', '.join(e.fields)} changed)...")
                warnings = build_orchestrator(old, cli_config, poller).delete(old, record.state)
                print_warnings(warnings)
                store.delete(config.name)
                record = _create(config, raw, cli_config, poller)
    except ClusterError as e:
        _fail(str(e))

    store.save(record)
    _report(ctx, record)


@click.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def destroy(ctx: click.Context, file: str, yes: bool) -> None:
    """Tear down the cluster described in FILE."""
    cli_config, store, poller = _context(ctx)
    config, _ = _load(file, cli_config)
    try:
        record = store.load(config.name)
    except ClusterError as e:
        _fail(str(e))
    if record is None:
        _fail(f"Cluster '{config.name}' is not managed.")

    if not yes and not click.confirm(
        f"This will wipe every node of cluster '{config.name}'. Continue?"
    ):
        return

    stored = record.config
    try:
        warnings = build_orchestrator(stored, cli_config, poller).delete(stored, record.state)
    except ClusterError as e:
        _fail(str(e))
    store.delete(config.name)
    click.echo(f"✓ Cluster '{config.name}' destroyed.")
    print_warnings(warnings)


@click.command("import-k3s")
@click.argument("name")
@click.argument("host")
@click.argument("user")
@click.argument("key_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--port", default=22, type=int, help="SSH port")
@click.pass_context
def import_k3s(
    ctx: click.Context, name: str, host: str, user: str, key_path: str, port: int
) -> None:
    """Adopt an existing K3s server at HOST as cluster NAME."""
    cli_config, store, poller = _context(ctx)
    if store.exists(name):
        _fail(f"Cluster '{name}' already exists.")

    node = NodeConfig(host, SSHCredentials(user, private_key_path=key_path), port=port)
    placeholder = ClusterConfig(name=name, control_plane=node)
    try:
        orchestrator = build_orchestrator(placeholder, cli_config, poller)
        config, state = orchestrator.import_cluster(name, node)
    except ClusterError as e:
        _fail(str(e))

    description = {
        "backend": "k3s",
        "name": name,
        "k3s_version": config.version,
        "control_plane": {
            "host": host,
            "ssh_user": user,
            "ssh_key_path": key_path,
            "ssh_port": port,
        },
    }
    record = ClusterRecord(name, "k3s", description, state)
    store.save(record)
    click.echo(f"✓ Imported K3s cluster '{name}' ({config.version or 'unknown version'}).")
    _report(ctx, record)


@click.command()
@click.argument("name", required=False)
@click.pass_context
def status(ctx: click.Context, name: str | None) -> None:
    """Show stored state for cluster NAME, or list all clusters."""
    _, store, _ = _context(ctx)
    try:
        if name is None:
            print_cluster_list([r for r in map(store.load, store.list_names()) if r])
            return
        record = store.load(name)
    except ClusterError as e:
        _fail(str(e))
    if record is None:
        _fail(f"Cluster '{name}' is not managed.")
    _report(ctx, record)


@click.command()
@click.argument("name")
@click.pass_context
def kubeconfig(ctx: click.Context, name: str) -> None:
    """Print the admin kubeconfig of cluster NAME."""
    _, store, _ = _context(ctx)
    record = store.load(name)
    if record is None or not record.state.kubeconfig:
        _fail(f"No kubeconfig stored for cluster '{name}'.")
    click.echo(record.state.kubeconfig, nl=False)


COMMANDS = [create, read, apply, destroy, import_k3s, status, kubeconfig]
