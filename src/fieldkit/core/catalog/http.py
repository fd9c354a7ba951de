"""
HTTP downloads for manifests and payloads.

``fetch`` retries transient failures (5xx responses, timeouts, connection
errors) with exponential backoff and jitter, and fails fast on client
errors (4xx). With the default network settings the waits are about
1s, 2s and 4s.

Example:
    >>> from fieldkit.core.config.models import NetworkConfig
    >>> body = fetch("https://tools.example.com/manifest.json", NetworkConfig(max_retries=2))
"""

import logging
import random
import time
from collections.abc import Iterator

import httpx

from fieldkit.core.config.models import NetworkConfig

logger = logging.getLogger(__name__)

BACKOFF_MULTIPLIER = 2.0
JITTER_RATIO = 0.2


def backoff_delays(base_delay: float, retries: int, *, jitter: bool = True) -> Iterator[float]:
    """Yield the wait before each retry: base_delay * 2**n, +/-20% when jittered."""
    for attempt in range(retries):
        delay = base_delay * BACKOFF_MULTIPLIER**attempt
        if jitter:
            variance = delay * JITTER_RATIO
            delay += random.uniform(-variance, variance)
        yield max(0.0, delay)


def is_transient(error: Exception) -> bool:
    """Whether a failed request is worth repeating."""
    # HTTPStatusError is also an HTTPError, check it first
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return isinstance(error, httpx.HTTPError)


def fetch(url: str, network: NetworkConfig, *, client: httpx.Client | None = None) -> bytes:
    """
    GET ``url`` and return the response body.

    Args:
        url: http(s) URL to download
        network: Timeout and retry settings
        client: Client to send through (a one-off request otherwise)

    Raises:
        httpx.HTTPStatusError: On 4xx, or on 5xx once the retries are used up
        httpx.HTTPError: On timeouts and connection errors once the retries
            are used up
    """
    get = client.get if client is not None else httpx.get
    delays = backoff_delays(network.base_delay, network.max_retries)

    attempt = 1
    while True:
        try:
            response = get(url, timeout=network.timeout_seconds, follow_redirects=True)
            response.raise_for_status()
            return response.content
        except httpx.HTTPError as e:
            if not is_transient(e):
                logger.debug(f"GET {url} failed, not retrying: {e}")
                raise
            delay = next(delays, None)
            if delay is None:
                logger.warning(f"GET {url} failed after {attempt} attempt(s): {e}")
                raise
            logger.info(f"GET {url} failed ({e}), retry {attempt} in {delay:.2f}s")
            time.sleep(delay)
            attempt += 1


__all__ = ["backoff_delays", "fetch", "is_transient"]
