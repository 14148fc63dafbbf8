"""
stats_client.py
---------------

Utility client for the community MLBB statistics REST API
(mlbb-stats.ridwaanhall.com, data sourced from Moonton's official servers).

Responsibilities:
    * Hold one `requests` session with the service User-Agent.
    * Bound every call with a timeout and honour `Retry-After` on HTTP 429.
    * Translate transport failures into FetchTimeout / FetchNetworkError.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests

from .config import MLBB_API_BASE_URL
from .errors import FetchNetworkError, FetchTimeout

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 15.0
USER_AGENT = "mlbbai-app/1.0"


class MLBBStatsClient:
    """Minimal JSON client for the statistics provider."""

    def __init__(
        self,
        base_url: str = MLBB_API_BASE_URL,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        max_rate_limit_retries: int = 2,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_rate_limit_retries = max_rate_limit_retries
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.strip('/')}/"

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET `path` and return the decoded JSON body."""
        url = self.url_for(path)
        attempt = 0

        while True:
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except requests.Timeout as exc:
                raise FetchTimeout(f"Timed out after {self.timeout:.0f}s fetching {url}") from exc
            except requests.RequestException as exc:
                raise FetchNetworkError(f"Request to {url} failed: {exc}") from exc

            if response.status_code == 429 and attempt < self.max_rate_limit_retries:
                retry_after = response.headers.get("Retry-After")
                try:
                    wait_seconds = float(retry_after)
                except (TypeError, ValueError):
                    wait_seconds = float(2 ** attempt)
                # Never wait past the per-call budget.
                wait_seconds = min(wait_seconds, self.timeout)
                logger.info("Provider rate limited %s; waiting %.1fs", url, wait_seconds)
                time.sleep(wait_seconds)
                attempt += 1
                continue

            try:
                response.raise_for_status()
            except requests.HTTPError as exc:
                raise FetchNetworkError(
                    f"Provider returned HTTP {response.status_code} for {url}"
                ) from exc

            try:
                return response.json()
            except ValueError as exc:
                raise FetchNetworkError(f"Provider returned a non-JSON body for {url}") from exc

    def close(self) -> None:
        self.session.close()
