"""Unit tests for turingpi_cluster.shared.paths module."""

from pathlib import Path

from turingpi_cluster.shared.paths import (
    CLUSTERS_DIR,
    CONFIG_FILE,
    TURINGPI_DIR,
    ensure_dirs,
    remove_file,
    write_private_file,
)


class TestPaths:
    """Tests for path constants."""

    def test_turingpi_dir_is_in_home(self):
        """Test TURINGPI_DIR is in user's home directory."""
        assert TURINGPI_DIR == Path.home() / ".turingpi"

    def test_layout(self):
        assert CLUSTERS_DIR == TURINGPI_DIR / "clusters"
        assert CONFIG_FILE == TURINGPI_DIR / "config.yaml"


class TestEnsureDirs:
    """Tests for ensure_dirs function."""

    def test_creates_directories_owner_only(self, tmp_path):
        """Test ensure_dirs creates the layout with 0o700 permissions."""
        base = tmp_path / ".turingpi"

        clusters = ensure_dirs(base)

        assert clusters == base / "clusters"
        assert (base.stat().st_mode & 0o777) == 0o700
        assert (clusters.stat().st_mode & 0o777) == 0o700

    def test_idempotent(self, tmp_path):
        """Test ensure_dirs can be called multiple times."""
        ensure_dirs(tmp_path / "a")
        ensure_dirs(tmp_path / "a")
        assert (tmp_path / "a" / "clusters").is_dir()


class TestPrivateFiles:
    """Tests for artifact file helpers."""

    def test_write_private_file_mode(self, tmp_path):
        """Test artifacts are written 0600 with parents created."""
        path = write_private_file(tmp_path / "nested" / "kubeconfig", "apiVersion: v1\n")

        assert path.read_text() == "apiVersion: v1\n"
        assert (path.stat().st_mode & 0o777) == 0o600

    def test_write_tightens_existing_file(self, tmp_path):
        """Test an existing world-readable file is truncated and tightened."""
        target = tmp_path / "talosconfig"
        target.write_text("old content that is longer")
        target.chmod(0o644)

        write_private_file(target, "new")

        assert target.read_text() == "new"
        assert (target.stat().st_mode & 0o777) == 0o600

    def test_remove_file(self, tmp_path):
        target = tmp_path / "x"
        target.write_text("x")

        assert remove_file(target) is True
        assert remove_file(target) is False
        assert remove_file(None) is False
