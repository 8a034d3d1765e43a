"""
Plain HTTP source: the artifact key is the URL, the body is the artifact.
"""
import logging
from typing import Dict, Optional

import requests

from ..errors import PermanentUpstreamError, TransientUpstreamError

logger = logging.getLogger("sources.http")

TRANSIENT_STATUS = {408, 425, 429}


class HttpSource:
    """
    Fetches artifacts with HTTP GET.

    Maps transport failures onto the upstream error taxonomy so the retry
    policy can classify them:
    - timeouts, connection errors (including a body cut off mid-stream),
      5xx, 408/425/429 -> TransientUpstreamError
    - any other 4xx -> PermanentUpstreamError
    """

    def __init__(
        self,
        name: str = "http",
        headers: Optional[Dict[str, str]] = None,
        default_timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.name = name
        self._default_timeout = default_timeout
        self._session = session or requests.Session()
        if headers:
            self._session.headers.update(headers)

    def fetch(self, key: str, timeout: Optional[float] = None) -> bytes:
        """GET `key` and return the response body."""
        try:
            response = self._session.get(key, timeout=timeout or self._default_timeout)
        except (
            requests.Timeout,
            requests.ConnectionError,
            requests.exceptions.ChunkedEncodingError,
        ) as e:
            logger.warning(f"HTTP transport error for {key}: {e}")
            raise TransientUpstreamError(f"{type(e).__name__} fetching {key}: {e}") from e
        except requests.RequestException as e:
            raise PermanentUpstreamError(f"Invalid request for {key}: {e}") from e

        status = response.status_code
        if status >= 500 or status in TRANSIENT_STATUS:
            raise TransientUpstreamError(f"HTTP {status} fetching {key}", status_code=status)
        if status >= 400:
            raise PermanentUpstreamError(f"HTTP {status} fetching {key}", status_code=status)
        return response.content

    def close(self) -> None:
        self._session.close()
