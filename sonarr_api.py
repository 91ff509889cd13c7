# -*- coding: utf-8 -*-
"""
Thin client for the Sonarr v3 HTTP API.

Only the endpoints the import workflow needs are mapped. Every request carries
the X-Api-Key header; bodies are JSON. Read-only calls can be retried on
transport errors (connection/timeout) with tenacity; mutating calls never are.
"""

from __future__ import annotations

import logging

from typing import Any, Dict, List, Optional

import requests

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

logger = logging.getLogger("SonarrAutoImport.sonarr")

API_PREFIX = "/api/v3"
DEFAULT_TIMEOUT = 60

TRANSIENT_ERRORS = (requests.ConnectionError, requests.Timeout)


class SonarrError(Exception):
    """Base class for catalog call failures."""


class SonarrHTTPError(SonarrError):
    def __init__(self, method: str, path: str, status_code: int, body: str = "") -> None:
        super().__init__(f"{method} {path} failed, status: {status_code}")
        self.method = method
        self.path = path
        self.status_code = status_code
        self.body = body


class SonarrTransportError(SonarrError):
    """Connection, timeout or undecodable response."""


class SonarrClient:
    """
    Sonarr API client bound to one base URL and API key.

    Parameters
    ----------
    base_url : str
        Sonarr root, e.g. http://sonarr:8989 (the /api/v3 prefix is added).
    api_key : str
        Sonarr API key.
    timeout : float
        Per-request timeout in seconds.
    session : requests.Session or None
        Injected session; a new one is created when omitted.
    retry_attempts : int
        Total attempts for GET calls on transport errors (1 = no retry).
    retry_wait : float
        Seconds between GET attempts.
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None,
                 retry_attempts: int = 1, retry_wait: float = 5) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_wait = retry_wait

    # ------------------------------ plumbing ---------------------------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}{API_PREFIX}{path}"

    def _send(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
              payload: Any = None) -> requests.Response:
        headers = {"X-Api-Key": self.api_key}
        if payload is not None:
            headers["Content-Type"] = "application/json"
        logger.debug("%s %s params=%s", method, path, params)
        return self.session.request(method, self._url(path), params=params, json=payload,
                                    headers=headers, timeout=self.timeout)

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                 payload: Any = None, decode: bool = True) -> Any:
        """
        Issue one call and decode the JSON body (skipped when *decode* is False).

        Raises SonarrHTTPError on non-2xx and SonarrTransportError on
        requests exceptions or a body that is not JSON.
        """
        try:
            if method == "GET" and self.retry_attempts > 1:
                retrying = Retrying(
                    stop=stop_after_attempt(self.retry_attempts),
                    wait=wait_fixed(self.retry_wait),
                    retry=retry_if_exception_type(TRANSIENT_ERRORS),
                    reraise=True,
                )
                resp = retrying(self._send, method, path, params, payload)
            else:
                resp = self._send(method, path, params, payload)
        except requests.RequestException as e:
            raise SonarrTransportError(f"{method} {path}: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise SonarrHTTPError(method, path, resp.status_code, getattr(resp, "text", "") or "")

        if not decode or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise SonarrTransportError(f"{method} {path}: invalid JSON response") from e

    # ------------------------------ endpoints --------------------------------

    def get_series(self) -> List[Dict[str, Any]]:
        return _records(self._request("GET", "/series"), "GET /series")

    def lookup_series(self, term: str) -> List[Dict[str, Any]]:
        return _records(self._request("GET", "/series/lookup", params={"term": term}),
                        "GET /series/lookup")

    def add_series(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        added = self._request("POST", "/series", payload=payload) or {}
        if not isinstance(added, dict):
            raise SonarrTransportError(f"POST /series: expected an object, got {type(added).__name__}")
        return added

    def get_episodes(self, series_id: int) -> List[Dict[str, Any]]:
        return _records(self._request("GET", "/episode", params={"seriesId": series_id}),
                        "GET /episode")

    def manual_import(self, files: List[Dict[str, Any]]) -> None:
        # Any 2xx is accepted; Sonarr may answer with an empty or non-JSON body.
        self._request("PUT", "/manualimport", payload={"files": files}, decode=False)


def _records(data: Any, what: str) -> List[Dict[str, Any]]:
    """Check that a listing endpoint returned a JSON array of objects."""
    if data is None:
        return []
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise SonarrTransportError(f"{what}: expected a list of objects, got {type(data).__name__}")
    return data
