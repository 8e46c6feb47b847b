"""Kubernetes API reachability check (httpx)."""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from ..errors import ConnectivityError
from ..polling import Poller

logger = structlog.get_logger(__name__)

DEFAULT_HTTP_TIMEOUT = 10.0


def build_http_client(timeout: float = DEFAULT_HTTP_TIMEOUT) -> httpx.Client:
    """Build the process-wide HTTP client.

    Fresh clusters serve self-signed certificates, so verification is off.
    The client is never reconfigured after construction.
    """
    return httpx.Client(verify=False, timeout=timeout, follow_redirects=False)


class APIReachability(Protocol):
    """Reachability check for a Kubernetes API endpoint."""

    def is_reachable(self, endpoint: str) -> bool: ...


class KubeAPIReachability:
    """APIReachability that GETs <endpoint>/version."""

    def __init__(self, client: httpx.Client):
        """Initialize the checker.

        Args:
            client: Explicitly constructed client (see `build_http_client`).
        """
        self._client = client

    def is_reachable(self, endpoint: str) -> bool:
        """Check whether the API server answers.

        Any HTTP answer below 500 counts, including 401/403 from an
        unauthenticated request.

        Raises:
            ConnectivityError: Connection refused, TLS or timeout failure.
        """
        url = f"{endpoint.rstrip('/')}/version"
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            raise ConnectivityError(f"API server {endpoint} unreachable: {e}") from e
        logger.debug("API reachability", url=url, status=response.status_code)
        return response.status_code < 500

    def wait_until_reachable(self, endpoint: str, timeout: float, poller: Poller) -> int:
        """Poll until the API server answers.

        Raises:
            WaitTimeoutError: Still unreachable at the deadline.
        """
        return poller.wait(
            lambda: self.is_reachable(endpoint),
            timeout,
            description=f"Kubernetes API at {endpoint}",
        )
