"""httpx transport for providers that speak plain HTTP (DeepSeek)."""

from __future__ import annotations

import logging

import httpx
from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

logger = logging.getLogger(__name__)

# Rate limiting and upstream hiccups; everything else in 4xx is the caller's fault.
RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})

_TRANSPORT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


def provider_client(base_url: str, *, api_key: str, read_timeout: float = 60.0) -> httpx.AsyncClient:
    """One pooled client per provider instance, authenticated with a bearer key."""
    return httpx.AsyncClient(
        base_url=base_url,
        headers={"Authorization": f"Bearer {api_key}"},
        timeout=httpx.Timeout(connect=10.0, read=read_timeout, write=20.0, pool=10.0),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        follow_redirects=True,
    )


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, _TRANSPORT_ERRORS):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code in RETRYABLE_STATUS


def transient_retry(attempts: int = 3, *, initial_wait: float = 0.5):
    """Retry transport failures and retryable statuses with jittered backoff; re-raise the last error."""
    return retry(
        reraise=True,
        stop=stop_after_attempt(attempts),
        wait=wait_exponential_jitter(initial=initial_wait, max=10.0, jitter=initial_wait),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
