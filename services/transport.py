import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import httpx

from models.events import AnalyticsBatch, ImmediateEvent
from middleware import SESSION_HEADER

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5.0


def _headers(session_id: str | None, api_token: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if session_id:
        headers[SESSION_HEADER] = session_id
    if api_token:
        headers["Authorization"] = f"Bearer {api_token}"
    return headers


class AnalyticsSink:
    """Destination for flushed analytics batches."""

    def send(self, batch: AnalyticsBatch) -> None:
        raise NotImplementedError

    def send_immediate(self, kind: str, event: ImmediateEvent) -> None:
        """High-priority single event (``conversion`` or ``error``). Sinks may ignore it."""

    def close(self) -> None:
        pass


class InMemoryAnalyticsSink(AnalyticsSink):
    """Keeps every batch in memory. Useful offline and in tests."""

    def __init__(self):
        self.batches: list[AnalyticsBatch] = []
        self.immediate: list[tuple[str, ImmediateEvent]] = []

    def send(self, batch: AnalyticsBatch) -> None:
        self.batches.append(batch)

    def send_immediate(self, kind: str, event: ImmediateEvent) -> None:
        self.immediate.append((kind, event))

    @property
    def events(self):
        return [event for batch in self.batches for event in batch.events]


class HttpAnalyticsSink(AnalyticsSink):
    """Posts batches to ``<endpoint>/events`` on a single background worker.

    ``send`` returns immediately. Delivery is at most once: a failed POST is
    logged and the batch is dropped.
    """

    def __init__(self, endpoint: str, api_token: str | None = None, timeout: float = REQUEST_TIMEOUT,
                 client: httpx.Client | None = None):
        self.endpoint = endpoint.rstrip("/")
        self.api_token = api_token
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="analytics-sink")

    def _post(self, path: str, payload: dict[str, Any], session_id: str | None) -> None:
        url = f"{self.endpoint}/{path}"
        try:
            response = self.client.post(url, json=payload, headers=_headers(session_id, self.api_token))
            response.raise_for_status()
            logger.debug("analytics POST %s -> %d", url, response.status_code)
        except httpx.HTTPError as e:
            logger.warning("analytics POST %s failed, dropping payload: %s", url, e)

    def send(self, batch: AnalyticsBatch) -> None:
        payload = batch.model_dump(mode="json", by_alias=True)
        self._executor.submit(self._post, "events", payload, batch.session_id)

    def send_immediate(self, kind: str, event: ImmediateEvent) -> None:
        payload = event.model_dump(mode="json", by_alias=True, exclude_none=True)
        self._executor.submit(self._post, kind, payload, event.session_id)

    def close(self) -> None:
        # queued after pending posts, so in-flight requests still finish
        if self._owns_client:
            self._executor.submit(self.client.close)
        self._executor.shutdown(wait=False)


class ReportingClient:
    """Read side of the reporting service. Every call returns None on failure."""

    def __init__(self, base_url: str, api_token: str | None = None, session_id: str | None = None,
                 timeout: float = REQUEST_TIMEOUT, client: httpx.Client | None = None):
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self.api_token = api_token
        self.session_id = session_id

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response | None:
        try:
            response = self.client.request(method, url, headers=_headers(self.session_id, self.api_token), **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.warning("reporting request %s %s failed: %s", method, url, e)
            return None

    def get_test_results(self, test_id: str) -> dict[str, Any] | None:
        response = self._request("GET", f"/api/ab-tests/{test_id}/results")
        return response.json() if response is not None else None

    def conversion_report(self, goal_id: str | None = None, start_date: str | None = None,
                          last_day: int | None = None) -> dict[str, Any] | None:
        body = {"goal_id": goal_id, "start_date": start_date, "last_day": last_day}
        response = self._request("POST", "/api/analytics/conversion-report",
                                 json={k: v for k, v in body.items() if v is not None})
        return response.json() if response is not None else None

    def export(self, format: str = "json", **filters) -> str | None:
        """Raw export body (JSON or CSV text)."""
        body = {"format": format, **{k: v for k, v in filters.items() if v is not None}}
        response = self._request("POST", "/api/analytics/export", json=body)
        return response.text if response is not None else None

    def close(self) -> None:
        self.client.close()
