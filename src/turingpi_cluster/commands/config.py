"""CLI configuration commands: show, set, unset."""

import json
import sys

import click

from ..config import ENV_VARS, get_config_path, load_config, save_config, unset_config
from ..errors import ConfigError
from ..formatters import print_config_yaml


@click.group()
def config() -> None:
    """Manage CLI configuration (~/.turingpi/config.yaml)."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show effective configuration and where each value comes from."""
    try:
        cli_config = load_config()
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    data = cli_config.as_dict()
    if ctx.obj and ctx.obj.get("json_output"):
        click.echo(json.dumps(data, indent=2))
        return
    click.echo(f"Config file: {get_config_path()}\n")
    print_config_yaml(data, {key: cli_config.get_source(key) for key in data})


@config.command("set")
@click.argument("key", type=click.Choice(sorted(ENV_VARS)))
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Persist KEY=VALUE to the config file."""
    try:
        save_config(key, value)
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ {key} = {value}")


@config.command("unset")
@click.argument("key", type=click.Choice(sorted(ENV_VARS)))
def config_unset(key: str) -> None:
    """Remove KEY from the config file."""
    if unset_config(key):
        click.echo(f"✓ {key} removed")
    else:
        click.echo(f"{key} was not set")
