"""HTTP client for interacting with OSRM services."""

from __future__ import annotations

import logging
import time
from typing import Sequence

import httpx

from ...config import settings

logger = logging.getLogger(__name__)


class OSRMClient:
    def __init__(
        self,
        base_url: str | None = None,
        profile: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self.base_url = (base_url or settings.osrm_base_url or "").rstrip("/")
        if not self.base_url:
            raise ValueError("OSRM base URL is not configured.")
        self.profile = profile or settings.osrm_profile
        self.timeout = timeout if timeout is not None else settings.osrm_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.osrm_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.osrm_backoff_seconds

    def _get_client(self) -> httpx.Client:
        return httpx.Client(timeout=httpx.Timeout(self.timeout, connect=5.0))

    def _get_with_retries(self, url: str, params: dict) -> dict:
        client = self._get_client()
        try:
            attempt = 0
            while True:
                try:
                    response = client.get(url, params=params)
                    response.raise_for_status()
                    data = response.json()
                    if data.get("code", "Ok") != "Ok":
                        raise ValueError(f"OSRM request failed: {data.get('message', data.get('code'))}")
                    return data
                except httpx.HTTPStatusError:
                    attempt += 1
                    if attempt > self.max_retries:
                        raise
                    time.sleep(self.backoff_seconds * attempt)
                except httpx.TimeoutException as e:
                    attempt += 1
                    if attempt > self.max_retries:
                        logger.warning(f"OSRM request timed out after {self.max_retries} retries: {e}")
                        raise
                    wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                    logger.debug(f"OSRM request timeout, retrying in {wait_time:.1f}s (attempt {attempt}/{self.max_retries})")
                    time.sleep(wait_time)
                except (httpx.ConnectError, httpx.NetworkError, OSError) as e:
                    attempt += 1
                    if attempt > self.max_retries:
                        raise ConnectionError(
                            f"Failed to connect to OSRM service at {self.base_url}: {e}"
                        ) from e
                    wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                    logger.debug(f"OSRM network error, retrying in {wait_time:.1f}s (attempt {attempt}/{self.max_retries}): {e}")
                    time.sleep(wait_time)
        finally:
            client.close()

    def table(self, coordinates: Sequence[tuple[float, float]]) -> dict:
        """Duration (seconds) and distance (meters) matrix for (lat, lon) coordinates."""
        if len(coordinates) < 2:
            raise ValueError("At least two coordinates are required for OSRM table.")

        coordinate_str = ";".join(f"{lon},{lat}" for lat, lon in coordinates)
        url = f"{self.base_url}/table/v1/{self.profile}/{coordinate_str}"
        data = self._get_with_retries(url, {"annotations": "duration,distance"})
        if "durations" not in data or "distances" not in data:
            raise ValueError("OSRM response missing durations/distances.")
        return {"durations": data["durations"], "distances": data["distances"]}


def check_health(base_url: str | None = None) -> bool:
    """Check OSRM service health by making a minimal table request.

    Public OSRM endpoints may not expose /health, so connectivity is tested with two
    coordinates instead.
    """
    base = base_url or settings.osrm_base_url
    if not base:
        return False
    try:
        test_coords = "39.172779,21.543333;39.192505,21.485811"
        url = f"{base.rstrip('/')}/table/v1/{settings.osrm_profile}/{test_coords}"
        response = httpx.get(url, params={"annotations": "duration"}, timeout=5.0)
        response.raise_for_status()
        data = response.json()
        return "durations" in data and isinstance(data.get("durations"), list)
    except (httpx.HTTPError, ValueError):
        return False
