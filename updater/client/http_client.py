"""Shared HTTP transport for talking to the updater service.

GET requests are retried by urllib3 on connection errors and on 502/503/504,
which a reverse proxy answers while services behind it are restarting during
an update. POSTs are never retried: a repeated trigger could start a second
update once the first has finished.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from requests import exceptions as req_exc
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from updater.client.api_errors import ApiTimeoutError

TOKEN_HEADER = "X-Updater-Token"
RETRY_STATUSES = (502, 503, 504)


@dataclass
class HttpConfig:
    """Timeout and retry configuration for updater HTTP calls.

    Attributes:
        request_timeout_s: Default timeout in seconds for API calls.
        retries: Retry attempts after the first GET.
        backoff_s: urllib3 backoff factor between GET retries.
    """

    request_timeout_s: int = 10
    retries: int = 2
    backoff_s: float = 0.5


class RetryingSession:
    """``requests.Session`` carrying the updater token and GET retry policy."""

    def __init__(self, token: Optional[str], cfg: HttpConfig) -> None:
        self.token = token
        self.cfg = cfg
        self.session = requests.Session()
        retry = Retry(
            total=cfg.retries,
            connect=cfg.retries,
            read=cfg.retries,
            status=cfg.retries,
            backoff_factor=cfg.backoff_s,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=frozenset({"GET"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        if token:
            self.session.headers[TOKEN_HEADER] = token

    def get(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        accept: str = "application/json",
        timeout: Optional[int] = None,
    ) -> requests.Response:
        """Send a GET request; retries happen inside the mounted adapter.

        Raises:
            ApiTimeoutError: if every attempt timed out or failed to connect.
        """
        try:
            return self.session.get(
                url,
                params=params,
                headers={"Accept": accept},
                timeout=timeout or self.cfg.request_timeout_s,
            )
        except (req_exc.Timeout, req_exc.ConnectionError) as exc:
            raise ApiTimeoutError(f"Timeout contacting {url}", context=f"GET {url}") from exc

    def post(
        self,
        url: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> requests.Response:
        """Send one POST request, optionally with a JSON body.

        Raises:
            ApiTimeoutError: if the request timed out or failed to connect.
        """
        request_headers = {"Accept": "application/json"}
        data = None
        if json_body is not None:
            request_headers["Content-Type"] = "application/json"
            data = json.dumps(json_body)
        request_headers.update(headers or {})
        try:
            return self.session.post(
                url,
                data=data,
                headers=request_headers,
                timeout=timeout or self.cfg.request_timeout_s,
            )
        except (req_exc.Timeout, req_exc.ConnectionError) as exc:
            raise ApiTimeoutError(f"Timeout contacting {url}", context=f"POST {url}") from exc

    def close(self) -> None:
        self.session.close()


__all__ = ["HttpConfig", "RetryingSession", "RETRY_STATUSES", "TOKEN_HEADER"]
