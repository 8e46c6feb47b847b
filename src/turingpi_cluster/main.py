"""CLI main entry point."""

import signal
import sys
import threading
from pathlib import Path

import click

from .commands import CLUSTER_COMMANDS, config
from .config import load_config
from .errors import ConfigError
from .polling import Poller
from .shared.logging import configure_logging
from .state import StateStore


def _install_interrupt_handler(cancel: threading.Event) -> None:
    """First Ctrl-C stops polling at the next wait; a second one kills the run."""

    def _handler(signum, frame) -> None:
        click.echo(
            "\nInterrupted, stopping after the current step (Ctrl-C again to abort)", err=True
        )
        cancel.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _handler)


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug)")
@click.option("--log-json", is_flag=True, help="Emit logs as JSON")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory holding cluster state (default: ~/.turingpi)",
)
@click.pass_context
def cli(
    ctx: click.Context, verbose: int, log_json: bool, json_output: bool, state_dir: str | None
) -> None:
    """Provision K3s and Talos clusters on Turing Pi boards."""
    ctx.ensure_object(dict)
    try:
        cli_config = load_config()
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if state_dir:
        cli_config.state_dir = Path(state_dir).expanduser()

    level = {0: cli_config.log_level, 1: "info"}.get(verbose, "debug")
    configure_logging(level, json_output=log_json)

    ctx.obj["config"] = cli_config
    ctx.obj["json_output"] = json_output
    ctx.obj["store"] = StateStore(cli_config.state_dir)
    cancel = ctx.obj.get("cancel") or threading.Event()
    ctx.obj["poller"] = Poller(interval=cli_config.poll_interval, cancel=cancel)


for command in CLUSTER_COMMANDS:
    cli.add_command(command)
cli.add_command(config)


def main() -> None:
    """Main entry point."""
    cancel = threading.Event()
    _install_interrupt_handler(cancel)
    cli(obj={"cancel": cancel})


if __name__ == "__main__":
    main()
