"""
app/connectors/base.py

Source connector contract and shared HTTP mechanics.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from app.config import ConnectorHTTPSettings
from app.errors import ConnectorRequestError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MAX_RETRY_AFTER_SECONDS = 60.0


@dataclass(frozen=True)
class SourcePage:
    """
    One page of upstream items and the position of the next page.
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Any = None


class SourceConnector(Protocol):
    def fetch_page(self, cursor: Any = None) -> SourcePage:
        ...

    def fetch_detail(self, item_id: str) -> dict[str, Any]:
        ...


class HTTPConnector:
    """
    Rate-limited JSON-over-HTTP client with exponential backoff.

    Retryable responses (429 and 5xx gateway errors) and network failures are
    retried up to `max_retries` times. A numeric `Retry-After` header takes
    precedence over the computed backoff, bounded by `MAX_RETRY_AFTER_SECONDS`.
    """

    def __init__(
        self,
        *,
        source: str,
        http_settings: ConnectorHTTPSettings,
        session: requests.Session | None = None,
        sleep: Any = time.sleep,
    ) -> None:
        self.source = source
        self._session = session or requests.Session()
        self._sleep = sleep
        self._settings = http_settings
        self._min_interval = (
            1.0 / http_settings.rate_limit_per_second if http_settings.rate_limit_per_second > 0 else 0.0
        )
        self._last_sent_at: float = 0.0

    def _request_json(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> Any:
        response = self._request(method=method, url=url, params=params, headers=headers, json_body=json_body)
        try:
            return response.json()
        except ValueError as exc:
            raise ConnectorRequestError(f"{self.source}: response from {url} was not valid JSON.") from exc

    def _request(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> requests.Response:
        attempts = self._settings.max_retries + 1
        status: int | None = None
        failure: Exception | None = None

        for attempt in range(attempts):
            self._wait_for_slot()
            response: requests.Response | None = None
            try:
                response = self._session.request(
                    method=method,
                    url=url,
                    params=params,
                    headers=headers,
                    json=json_body,
                    timeout=self._settings.timeout_seconds,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                status, failure = None, exc
            else:
                status = response.status_code
                if status not in RETRYABLE_STATUS_CODES:
                    return self._checked(response, url)
                failure = requests.HTTPError(f"HTTP {status}", response=response)

            if attempt == attempts - 1:
                break
            delay = self._retry_delay(attempt, response)
            logger.warning(
                "Retrying source request source=%s url=%s status=%s attempt=%d/%d delay_seconds=%.2f",
                self.source,
                url,
                status,
                attempt + 1,
                attempts,
                delay,
            )
            self._sleep(delay)

        logger.error(
            "Source request gave up source=%s url=%s status=%s attempts=%d error=%s",
            self.source,
            url,
            status,
            attempts,
            failure,
        )
        raise ConnectorRequestError(
            f"{self.source}: request to {url} failed after {attempts} attempts.",
            status_code=status,
        ) from failure

    def _checked(self, response: requests.Response, url: str) -> requests.Response:
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            logger.error(
                "Source request rejected source=%s url=%s status=%s",
                self.source,
                url,
                response.status_code,
            )
            raise ConnectorRequestError(
                f"{self.source}: request to {url} was rejected with HTTP {response.status_code}.",
                status_code=response.status_code,
            ) from exc
        return response

    def _retry_delay(self, attempt: int, response: requests.Response | None) -> float:
        retry_after = _retry_after_seconds(response)
        if retry_after is not None:
            return min(retry_after, MAX_RETRY_AFTER_SECONDS)
        return self._settings.backoff_initial_seconds * (self._settings.backoff_multiplier**attempt)

    def _wait_for_slot(self) -> None:
        """
        Space outbound requests by the configured per-second rate.
        """

        if self._min_interval <= 0:
            return
        remaining = self._min_interval - (time.monotonic() - self._last_sent_at)
        if remaining > 0:
            self._sleep(remaining)
        self._last_sent_at = time.monotonic()


def _retry_after_seconds(response: requests.Response | None) -> float | None:
    headers = getattr(response, "headers", None) or {}
    raw_value = headers.get("Retry-After")
    if raw_value is None:
        return None
    try:
        seconds = float(raw_value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None
