"""
Mapping between stable external identifiers and control-plane hrefs.

An identifier is an href with the ``{endpoint}/v{api_version}`` prefix
removed, e.g. ``/vApp/vm-42``. The mapping is pure; no I/O happens here.

Examples:
    >>> locator = ResourceLocator("https://vcd.example.com/api", "5.1")
    >>> locator.to_href("/vApp/vm-42")
    'https://vcd.example.com/api/v5.1/vApp/vm-42'
    >>> locator.to_id("https://vcd.example.com/api/v5.1/vApp/vm-42")
    '/vApp/vm-42'
"""

from vcloud.errors import ConfigurationError


class ResourceLocator:
    """Bidirectional id/href mapping for one endpoint and API version."""

    def __init__(self, endpoint: str, api_version: str):
        self.endpoint = endpoint.rstrip("/")
        self.api_version = api_version

    @property
    def prefix(self) -> str:
        return f"{self.endpoint}/v{self.api_version}"

    def to_href(self, resource_id: str) -> str:
        """Rebuild the full href for an external identifier."""
        return f"{self.prefix}{resource_id}"

    def to_id(self, href: str) -> str:
        """
        Strip the endpoint/version prefix from an href.

        The control plane may answer over a different scheme than the one
        configured (http vs https); the prefix length is adjusted by the
        one character the scheme names differ by.

        Raises:
            ConfigurationError: Neither side uses http or https
        """
        extra = self._scheme_offset(href)
        return href[len(self.prefix) + extra:]

    def _scheme_offset(self, href: str) -> int:
        endpoint = self.endpoint
        if (href.startswith("http:") and endpoint.startswith("http:")) or (
            href.startswith("https:") and endpoint.startswith("https:")
        ):
            return 0
        if href.startswith("https:") and endpoint.startswith("http:"):
            return 1
        if href.startswith("http:") and endpoint.startswith("https:"):
            return -1
        raise ConfigurationError(
            f"Unknown protocol endpoints {href} against {endpoint}"
        )

    def __repr__(self) -> str:
        return f"ResourceLocator({self.prefix!r})"
