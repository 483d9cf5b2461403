"""
HTTP client for the metrics source

Every request carries a timeout. Network errors, timeouts, 5xx, 408 and 429
are retried with exponential backoff plus jitter; anything else fails fast.
"""
import logging
import random
import threading
import time
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError as ModelValidationError

from alerts_core.config import AlertsConfig
from alerts_core.exceptions import (
    ConnectivityError,
    DataUnavailable,
    MetricsSourceError,
    RunCancelledError,
)
from alerts_core.models import LatestValues, MetricSeries, MetricsHealth

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (408, 429)
DEFAULT_SERIES_LIMIT = 500


class MetricsClient:
    """Read-only client for the metrics API"""

    HEALTH_PATH = '/api/health'
    SUMMARY_PATH = '/api/v1/metrics/summary'
    SERIES_PATH = '/api/v1/metrics/{metric_id}'

    def __init__(self, config: Optional[AlertsConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or AlertsConfig()
        self.base_url = self.config.metrics_api_base
        self.timeout = self.config.http_timeout_seconds
        self.retries = self.config.http_retries
        self.backoff_base_ms = self.config.http_backoff_base_ms
        self.backoff_max_ms = self.config.http_backoff_max_ms

        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        if self.config.metrics_api_key:
            self.session.headers['x-api-key'] = self.config.metrics_api_key

        logger.info(f"MetricsClient initialized for {self.base_url}")

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    def get_health(self, cancel_event: Optional[threading.Event] = None) -> MetricsHealth:
        """GET /api/health"""
        data = self._get(self.HEALTH_PATH, cancel_event=cancel_event)
        return self._parse(MetricsHealth, data, self.HEALTH_PATH)

    def get_latest_values(
        self,
        metric_ids: List[str],
        cancel_event: Optional[threading.Event] = None
    ) -> LatestValues:
        """GET /api/v1/metrics/summary?ids=a,b"""
        if not metric_ids:
            return LatestValues()

        data = self._get(
            self.SUMMARY_PATH,
            params={'ids': ','.join(metric_ids)},
            cancel_event=cancel_event,
        )
        latest = self._parse(LatestValues, data, self.SUMMARY_PATH)
        logger.debug(f"Fetched latest values: {len(latest.items)} found, {len(latest.missing)} missing")
        return latest

    def get_series(
        self,
        metric_id: str,
        from_: Optional[str] = None,
        to: Optional[str] = None,
        limit: int = DEFAULT_SERIES_LIMIT,
        cancel_event: Optional[threading.Event] = None
    ) -> MetricSeries:
        """
        GET /api/v1/metrics/{metric_id}

        Raises:
            DataUnavailable: the source does not know the metric (404)
        """
        params: Dict[str, Any] = {'limit': limit}
        if from_:
            params['from'] = from_
        if to:
            params['to'] = to

        path = self.SERIES_PATH.format(metric_id=metric_id)
        try:
            data = self._get(path, params=params, cancel_event=cancel_event)
        except MetricsSourceError as e:
            if e.status_code == 404:
                raise DataUnavailable(f"Metric not found at source: {metric_id}") from e
            raise

        if isinstance(data, dict):
            data.setdefault('metric_id', metric_id)
        series = self._parse(MetricSeries, data, path)
        logger.debug(f"Fetched {len(series.points)} points for {metric_id}")
        return series

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def _get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Any:
        url = f"{self.base_url}{path}"
        last_error: Optional[str] = None

        for attempt in range(self.retries + 1):
            start = time.monotonic()
            try:
                response = self.session.request('GET', url, params=params, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                duration_ms = int((time.monotonic() - start) * 1000)
                status = response.status_code

                if status < 400:
                    logger.debug(f"GET {path} -> {status} in {duration_ms}ms")
                    try:
                        return response.json()
                    except ValueError as e:
                        raise MetricsSourceError(
                            f"Invalid JSON from {path}", status_code=status
                        ) from e

                if status >= 500 or status in RETRYABLE_STATUS:
                    last_error = f"HTTP {status}"
                else:
                    raise MetricsSourceError(
                        f"GET {path} failed with HTTP {status}", status_code=status
                    )

            if attempt < self.retries:
                delay = self._backoff_delay(attempt)
                logger.warning(
                    f"GET {path} attempt {attempt + 1}/{self.retries + 1} failed ({last_error}), "
                    f"retrying in {delay:.2f}s"
                )
                self._sleep(delay, cancel_event)

        logger.error(f"GET {path} failed after {self.retries + 1} attempts: {last_error}")
        raise ConnectivityError(f"Metrics source unavailable at {path}: {last_error}")

    def _backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before the next attempt"""
        delay_ms = min(
            self.backoff_base_ms * (2 ** attempt) + random.random() * 1000,
            self.backoff_max_ms,
        )
        return delay_ms / 1000.0

    def _sleep(self, seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            time.sleep(seconds)
            return
        if cancel_event.wait(seconds):
            raise RunCancelledError("Run cancelled during retry backoff")

    def _parse(self, model, data: Any, path: str):
        try:
            return model.model_validate(data)
        except ModelValidationError as e:
            raise MetricsSourceError(f"Unexpected response shape from {path}: {e}") from e

    def close(self) -> None:
        self.session.close()
