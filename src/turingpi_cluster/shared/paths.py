"""Path management for turingpi-cluster.

Manages the ~/.turingpi/ directory layout and owner-only artifact files.
"""

import os
from pathlib import Path

# Base directory for all turingpi-cluster data
TURINGPI_DIR = Path.home() / ".turingpi"

# Per-cluster state documents
CLUSTERS_DIR = TURINGPI_DIR / "clusters"

# CLI configuration file
CONFIG_FILE = TURINGPI_DIR / "config.yaml"

PRIVATE_FILE_MODE = 0o600


def ensure_dirs(base_dir: Path | None = None) -> Path:
    """Create directory structure if missing.

    Creates <base>/ and <base>/clusters/ with mode 0o700 (user-only access).

    Args:
        base_dir: Base directory (default: ~/.turingpi)

    Returns:
        Path to the clusters directory.
    """
    base = base_dir or TURINGPI_DIR
    clusters = base / "clusters"
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    clusters.mkdir(mode=0o700, exist_ok=True)
    return clusters


def write_private_file(path: str | Path, content: str) -> Path:
    """Write content to a file readable and writable by the owner only.

    Existing files are truncated and their mode tightened to 0600.

    Args:
        path: Destination path; parent directories are created.
        content: Text to write.

    Returns:
        The resolved destination path.
    """
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PRIVATE_FILE_MODE)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    os.chmod(target, PRIVATE_FILE_MODE)
    return target


def remove_file(path: str | Path | None) -> bool:
    """Remove a file if it exists.

    Returns:
        True if a file was removed.
    """
    if not path:
        return False
    target = Path(path).expanduser()
    if target.exists():
        target.unlink()
        return True
    return False
