"""Sync HTTP client with retries and timeout for tools and webhooks."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_RETRIES = 1
DEFAULT_USER_AGENT = "AgentCrew-Agent/1.0"


@dataclass(slots=True)
class FetchResult:
    """Result of an HTTP request."""

    url: str
    status_code: int
    reason_phrase: str
    content: str
    content_type: str
    is_success: bool
    error: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def status_line(self) -> str:
        return f"HTTP {self.status_code} {self.reason_phrase}".rstrip()

    def json(self) -> Any:
        return json.loads(self.content)


class HttpFetcher:
    """HTTP client wrapper with retry, timeout, and user-agent configuration."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds))
        base_headers = {"User-Agent": user_agent}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            timeout=self._timeout,
            headers=base_headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def fetch(self, url: str, *, headers: dict[str, str] | None = None) -> FetchResult:
        """GET URL content, returning structured result."""

        return self.request("GET", url, headers=headers)

    def request(  # noqa: PLR0913
        self,
        method: str,
        url: str,
        *,
        content: str | bytes | None = None,
        data: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> FetchResult:
        """Send one request; transport failures are reported in `FetchResult.error`."""

        try:
            response = self._client.request(
                method.upper(),
                url,
                content=content,
                data=data,
                headers=headers,
                timeout=timeout_seconds if timeout_seconds is not None else self._timeout,
            )
            return FetchResult(
                url=url,
                status_code=response.status_code,
                reason_phrase=response.reason_phrase,
                content=response.text,
                content_type=response.headers.get("content-type", ""),
                is_success=response.is_success,
                error=None if response.is_success else f"HTTP {response.status_code}",
                headers=dict(response.headers),
            )
        except httpx.TimeoutException:
            logger.warning("Timeout requesting %s %s", method.upper(), url)
            return _failed(url, "timeout")
        except httpx.HTTPError as exc:
            logger.warning("HTTP error requesting %s %s: %s", method.upper(), url, exc)
            return _failed(url, str(exc) or exc.__class__.__name__)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpFetcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _failed(url: str, error: str) -> FetchResult:
    return FetchResult(
        url=url,
        status_code=0,
        reason_phrase="",
        content="",
        content_type="",
        is_success=False,
        error=error,
    )
