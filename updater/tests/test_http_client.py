"""Transport wrapper tests; no network access."""

from __future__ import annotations

import pytest
from requests import exceptions as req_exc

from updater.client import ApiTimeoutError, HttpConfig, RetryingSession
from updater.client.http_client import RETRY_STATUSES, TOKEN_HEADER


def test_token_header_and_get_only_retry_policy():
    transport = RetryingSession("s3cret", HttpConfig(retries=3, backoff_s=0.1))

    assert transport.session.headers[TOKEN_HEADER] == "s3cret"
    retry = transport.session.get_adapter("http://updater:8765/jobs").max_retries
    assert retry.total == 3
    assert set(retry.status_forcelist) == set(RETRY_STATUSES)
    assert retry.is_retry("GET", 503)
    assert not retry.is_retry("POST", 503)


def test_no_token_sends_no_header():
    transport = RetryingSession(None, HttpConfig())

    assert TOKEN_HEADER not in transport.session.headers


def test_post_sends_json_and_extra_headers(monkeypatch: pytest.MonkeyPatch):
    transport = RetryingSession("s3cret", HttpConfig(request_timeout_s=7))
    seen = {}

    def _post(url, **kwargs):
        seen.update(url=url, **kwargs)
        return "response"

    monkeypatch.setattr(transport.session, "post", _post)

    assert transport.post("http://u/update", json_body={"async": True}, headers={"Prefer": "respond-async"}) == "response"
    assert seen["data"] == '{"async": true}'
    assert seen["headers"]["Content-Type"] == "application/json"
    assert seen["headers"]["Prefer"] == "respond-async"
    assert seen["timeout"] == 7


@pytest.mark.parametrize("method", ["get", "post"])
@pytest.mark.parametrize("error", [req_exc.ConnectTimeout("slow"), req_exc.ConnectionError("refused")])
def test_transport_failures_become_timeout_errors(monkeypatch: pytest.MonkeyPatch, method: str, error):
    transport = RetryingSession(None, HttpConfig())

    def _raise(*args, **kwargs):
        raise error

    monkeypatch.setattr(transport.session, method, _raise)

    with pytest.raises(ApiTimeoutError) as exc_info:
        getattr(transport, method)("http://updater:8765/jobs")
    assert exc_info.value.context == f"{method.upper()} http://updater:8765/jobs"
