"""
Source capability: where artifact bytes come from on a cache miss.
"""
from typing import Optional, Protocol


class Source(Protocol):
    """
    Interface for upstream artifact producers.

    Variant upstreams (plain HTTP, browser automation, vendor APIs) are
    separate implementations of this one method, not subclasses of each other.

    Implementations:
    - HttpSource: plain HTTP GET via requests
    """

    name: str

    def fetch(self, key: str, timeout: Optional[float] = None) -> bytes:
        """
        Produce the artifact for `key`.

        Args:
            key: Artifact key (usually a URL)
            timeout: Seconds the call may take; implementations must honor it

        Returns:
            The artifact bytes

        Raises:
            TransientUpstreamError: Timeout, connection reset, 5xx-equivalent
            PermanentUpstreamError: Validation or 4xx-equivalent failure
        """
        ...
