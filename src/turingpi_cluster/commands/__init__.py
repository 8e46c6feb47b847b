"""CLI commands."""

from .cluster import COMMANDS as CLUSTER_COMMANDS
from .config import config

__all__ = ["CLUSTER_COMMANDS", "config"]
