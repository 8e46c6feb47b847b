"""CLI output formatting helpers."""

from typing import Any

import click
import yaml
from rich.console import Console
from rich.table import Table

from .models import ClusterStatus
from .state import ClusterRecord

console = Console()

STATUS_STYLES = {
    ClusterStatus.READY: "green",
    ClusterStatus.DEGRADED: "yellow",
    ClusterStatus.BOOTSTRAPPING: "cyan",
}


def print_warnings(warnings: list[str]) -> None:
    for w in warnings:
        click.echo(f"  ⚠ {w}", err=True)


def record_summary(record: ClusterRecord) -> dict[str, Any]:
    """Non-secret view of a cluster record."""
    state = record.state
    summary: dict[str, Any] = {
        "name": record.name,
        "backend": record.backend,
        "status": state.status.value,
        "api_endpoint": state.api_endpoint,
    }
    if record.backend == "talos":
        summary["control_planes"] = list(state.control_plane_ips)
        summary["workers"] = list(state.worker_ips)
    else:
        summary["version"] = state.version
        summary["nodes"] = list(state.node_names)
    if state.warnings:
        summary["warnings"] = list(state.warnings)
    return summary


def print_cluster(record: ClusterRecord) -> None:
    """Print one cluster as a two-column table."""
    summary = record_summary(record)
    style = STATUS_STYLES.get(record.state.status, "white")

    table = Table(title=f"Cluster {record.name}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in summary.items():
        if key == "status":
            value = f"[{style}]{value}[/{style}]"
        elif isinstance(value, list):
            value = "\n".join(value) or "-"
        table.add_row(key, str(value or "-"))
    console.print(table)


def print_cluster_list(records: list[ClusterRecord]) -> None:
    if not records:
        click.echo("No clusters managed. Run: turingpi-cluster create FILE")
        return
    table = Table(title="Clusters")
    table.add_column("Name", style="bold")
    table.add_column("Backend")
    table.add_column("Status")
    table.add_column("API endpoint")
    for record in records:
        style = STATUS_STYLES.get(record.state.status, "white")
        table.add_row(
            record.name,
            record.backend,
            f"[{style}]{record.state.status.value}[/{style}]",
            record.state.api_endpoint or "-",
        )
    console.print(table)


def print_config_yaml(data: dict[str, Any], sources: dict[str, str] | None = None) -> None:
    """Print config values as YAML, optionally annotated with their source."""
    if not sources:
        click.echo(yaml.dump(data, default_flow_style=False, sort_keys=False))
        return
    for key, value in data.items():
        click.echo(f"{key}: {value}  # {sources.get(key, 'default')}")
