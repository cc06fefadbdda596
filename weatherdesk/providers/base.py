from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests
from requests import Response


logger = logging.getLogger(__name__)

PLACEHOLDER_KEYS = frozenset({"", "YOUR_API_KEY", "CHANGE_ME"})


class ProviderError(RuntimeError):
    """Base provider error.

    ``body`` holds the provider's response text verbatim so failures can be
    diagnosed without re-issuing the request.
    """

    retryable = False

    def __init__(self, message: str, *, status: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class CredentialMissing(ProviderError):
    """The API credential is absent or rejected by the provider."""


class PlaceNotFound(ProviderError):
    """The query or place does not map to anything the provider knows."""

    def __init__(self, query: str = "", **kwargs: Any) -> None:
        super().__init__(f"place '{query}' not found", **kwargs)
        self.query = query


class TransientProviderError(ProviderError):
    """Network failure, timeout or 5xx answer."""

    retryable = True


class QuotaExceeded(TransientProviderError):
    """Raised when a provider reports a quota/usage limit issue."""


class MalformedResponse(ProviderError):
    """The provider answered with a body that breaks its own contract."""


class ResolutionFailure(ProviderError):
    """Geocoding failed; wraps the underlying classified error."""

    def __init__(self, query: str, cause: ProviderError) -> None:
        super().__init__(f"could not resolve '{query}': {cause}", status=cause.status, body=cause.body)
        self.query = query
        self.cause = cause
        self.retryable = cause.retryable


@dataclass(frozen=True)
class FetchOptions:
    """Per-call parameters: credential, units system and language tag."""

    api_key: Optional[str]
    units: str = "metric"
    language: str = "en"

    def require_key(self) -> str:
        key = (self.api_key or "").strip()
        if key in PLACEHOLDER_KEYS:
            raise CredentialMissing("API key is not configured")
        return key


@dataclass
class RequestConfig:
    timeout: float = 5.0
    connect_timeout: float = 5.0


class HttpProvider:
    """Base class that adds timeouts and failure classification for HTTP providers."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        request_config: Optional[RequestConfig] = None,
    ) -> None:
        self.request_config = request_config or RequestConfig()
        self.session = session or requests.Session()
        self._log = logging.getLogger(self.__class__.__name__)

    def _handle_response(self, response: Response) -> Response:
        status = response.status_code
        if 200 <= status < 300:
            return response
        body = response.text
        if status == 401:
            self._log.error("Provider rejected credential: %s", body)
            raise CredentialMissing("API key rejected by provider", status=status, body=body)
        if status == 404:
            self._log.info("Provider returned 404: %s", body)
            raise PlaceNotFound(status=status, body=body)
        if status == 429:
            self._log.warning("Quota exceeded: %s", body)
            raise QuotaExceeded("quota exceeded", status=status, body=body)
        if status >= 500:
            self._log.error("Provider returned %s: %s", status, body)
            raise TransientProviderError(f"HTTP {status}", status=status, body=body)
        self._log.error("Provider returned %s: %s", status, body)
        raise ProviderError(f"HTTP {status}", status=status, body=body)

    def _request(self, method: str, url: str, **kwargs) -> Response:
        timeout = (self.request_config.connect_timeout, self.request_config.timeout)
        try:
            response = self.session.request(method, url, timeout=timeout, **kwargs)
        except requests.Timeout as exc:
            self._log.error("Request timed out", exc_info=exc)
            raise TransientProviderError("timeout") from exc
        except requests.RequestException as exc:
            self._log.error("Request failed", exc_info=exc)
            raise TransientProviderError("request failed") from exc
        return self._handle_response(response)

    def _json(self, response: Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            self._log.error("Failed to decode JSON", exc_info=exc)
            raise MalformedResponse("invalid json", status=response.status_code, body=response.text) from exc


__all__ = [
    "CredentialMissing",
    "FetchOptions",
    "HttpProvider",
    "MalformedResponse",
    "PlaceNotFound",
    "ProviderError",
    "QuotaExceeded",
    "RequestConfig",
    "ResolutionFailure",
    "TransientProviderError",
]
