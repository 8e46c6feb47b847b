"""Parsers for the text output of kubectl, k3s and talosctl.

Everything here is a pure function over captured stdout so that readiness
checks can be tested without a node.
"""

from __future__ import annotations

INSTALLED_MARKER = "installed"
NOT_INSTALLED_MARKER = "not_installed"


def is_installed_marker(output: str) -> bool:
    """Interpret the output of the `test -f ... && echo installed` check."""
    lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
    return bool(lines) and lines[-1] == INSTALLED_MARKER


def _node_table(output: str) -> tuple[list[str], list[list[str]]]:
    """Split a `kubectl get nodes` table into header and rows.

    Lines before the `NAME` header (kubectl warnings) are dropped.
    """
    lines = output.strip().splitlines()
    for index, line in enumerate(lines):
        header = line.split()
        if header[:2] == ["NAME", "STATUS"]:
            rows = [row.split() for row in lines[index + 1 :]]
            return header, [row for row in rows if len(row) >= 2]
    return [], []


def node_is_ready(output: str, identifiers: tuple[str, ...] | list[str] | str) -> bool:
    """Check `kubectl get nodes -o wide` output for a Ready node.

    A row matches when its NAME column or its INTERNAL-IP column equals one of
    the identifiers. Its STATUS column must be exactly `Ready`; `NotReady` and
    `Ready,SchedulingDisabled` do not count.

    Args:
        output: Captured table output, header included.
        identifiers: Hostname and/or address the node may be listed under.

    Returns:
        True if a matching row reports Ready.
    """
    if isinstance(identifiers, str):
        identifiers = (identifiers,)
    wanted = {i for i in identifiers if i}

    header, rows = _node_table(output)
    ip_col = header.index("INTERNAL-IP") if "INTERNAL-IP" in header else None

    for columns in rows:
        names = {columns[0]}
        if ip_col is not None and len(columns) > ip_col:
            names.add(columns[ip_col])
        if names & wanted and columns[1] == "Ready":
            return True
    return False


def parse_node_names(output: str) -> list[str]:
    """Extract names from `kubectl get nodes -o name` output.

    Only `node/<name>` lines count.
    """
    names = []
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("node/"):
            names.append(line[len("node/") :])
    return names


def parse_version(output: str) -> str:
    """Extract the version token from `k3s --version` output.

    `k3s version v1.29.4+k3s1 (abc123)` yields `v1.29.4+k3s1`.
    """
    for line in output.splitlines():
        tokens = line.split()
        if tokens[:2] == ["k3s", "version"] and len(tokens) > 2:
            return tokens[2]
    return ""


def has_etcd_members(output: str) -> bool:
    """True if `talosctl etcd status` shows the cluster is bootstrapped."""
    return "MEMBER" in output or "members" in output


def service_running(output: str) -> bool:
    """True if `talosctl service <name>` reports the service Running."""
    return "Running" in output


def parse_etcd_members(output: str) -> list[str]:
    """Extract member IDs from `talosctl etcd members`.

    The header row is skipped; the ID is the second column.
    """
    members = []
    for line in output.strip().splitlines()[1:]:
        columns = line.split()
        if len(columns) >= 2:
            members.append(columns[1])
    return members


def pod_phase(output: str) -> str:
    """Normalize a `{.items[0].status.phase}` jsonpath result."""
    return output.strip().strip("'\"")


def parse_server_token(node_token: str) -> str:
    """Extract the server secret from a `K10<hash>::server:<secret>` token."""
    token = node_token.strip()
    marker = "::server:"
    if marker in token:
        return token.split(marker, 1)[1]
    return token
