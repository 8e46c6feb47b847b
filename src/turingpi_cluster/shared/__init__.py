"""Shared modules for turingpi-cluster.

- Logging setup (structlog)
- ~/.turingpi/ layout and owner-only artifact files
"""

from .logging import configure_logging
from .paths import (
    CLUSTERS_DIR,
    CONFIG_FILE,
    TURINGPI_DIR,
    ensure_dirs,
    remove_file,
    write_private_file,
)

__all__ = [
    # Paths
    "TURINGPI_DIR",
    "CLUSTERS_DIR",
    "CONFIG_FILE",
    "ensure_dirs",
    "write_private_file",
    "remove_file",
    # Logging
    "configure_logging",
]
