"""Client for the external equipment analysis service."""
import os
import logging

import requests

from alerts.errors import UpstreamUnavailable
from models.metrics import AnalysisOutcome
from utils.http_client import HTTPClient, APIError
from utils.rate_limiter import RateLimiter

logger = logging.getLogger("alertmon.analysis")


class AnalysisClient:
    """Fetches the latest analysis outcome per device.

    `fetch_latest_snapshot` returns None when the provider has no analysis for
    the device (HTTP 404) and raises UpstreamUnavailable for anything else.
    """

    def __init__(self, config: dict, http_client=None):
        cfg = config.get("analysis", {})
        self.latest_path = cfg.get("latest_path", "/devices/{device_id}/analysis/latest")
        self.health_path = cfg.get("health_path", "/health")
        token = os.environ.get("ALERTMON_ANALYSIS_TOKEN", cfg.get("api_token", ""))
        headers = {"Authorization": f"Bearer {token}"} if token else None
        self.client = http_client or HTTPClient(
            base_url=cfg.get("base_url", "http://localhost:8080/api"),
            rate_limiter=RateLimiter(cfg.get("rate_limit", 120)),
            timeout=cfg.get("timeout", 30),
            max_retries=cfg.get("max_retries", 2),
            headers=headers,
        )

    def fetch_latest_outcome(self, device_id):
        path = self.latest_path.format(device_id=device_id)
        try:
            data = self.client.get(path)
        except APIError as e:
            if e.status_code == 404:
                logger.debug(f"No analysis available for {device_id}")
                return None
            raise UpstreamUnavailable(f"Analysis provider error for {device_id}: {e}") from e
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"Analysis provider unreachable for {device_id}: {e}") from e

        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"Analysis provider returned a non-JSON body for {device_id}")
        data.setdefault("device_id", device_id)
        try:
            return AnalysisOutcome.from_dict(data)
        except (ValueError, TypeError) as e:
            raise UpstreamUnavailable(f"Analysis provider returned a malformed body for {device_id}: {e}") from e

    def fetch_latest_snapshot(self, device_id):
        outcome = self.fetch_latest_outcome(device_id)
        return outcome.to_snapshot() if outcome is not None else None

    def ping(self) -> bool:
        try:
            self.client.get(self.health_path)
            return True
        except (APIError, requests.RequestException) as e:
            logger.warning(f"Analysis provider health check failed: {e}")
            return False
