"""HTTP client for the updater Control API."""

from updater.client.api_errors import ApiClientError, ApiError, ApiServerError, ApiTimeoutError
from updater.client.http_client import HttpConfig, RetryingSession
from updater.client.updater_rest import UpdateStartResult, UpdaterRestAdapter

__all__ = [
    "ApiClientError",
    "ApiError",
    "ApiServerError",
    "ApiTimeoutError",
    "HttpConfig",
    "RetryingSession",
    "UpdateStartResult",
    "UpdaterRestAdapter",
]
