"""HTTP client for the cloud backend's REST and function endpoints."""

from __future__ import annotations

import json
from typing import Any, Mapping

import requests

DEFAULT_TIMEOUT = 30.0


class CloudError(Exception):
    """Raised when a request to the backend fails or is rejected.

    ``status`` holds the HTTP status code, or None when the request never
    got a response (connection refused, timeout, TLS failure).
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _has_header(headers: Mapping[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key in headers)


class CloudClient:
    """Posts to the backend with the project's API key attached."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must not be empty")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session if session is not None else requests.Session()

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def headers(self, extra: Mapping[str, Any] | None = None) -> dict[str, str]:
        """The authentication headers, merged with ``extra`` (which wins)."""
        result = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
        }
        if extra:
            result.update({str(key): str(value) for key, value in extra.items()})
        return result

    def post(
        self,
        path: str,
        body: Any = None,
        headers: Mapping[str, Any] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> requests.Response:
        """POST ``body`` to ``path`` and return the response, whatever its status.

        Bytes are sent as they are; strings are sent as JSON text; any other
        value is serialised to JSON. Raises :class:`CloudError` when no
        response arrives.
        """
        merged = self.headers(headers)
        data: bytes | None
        if body is None:
            data = None
        elif isinstance(body, (bytes, bytearray, memoryview)):
            data = bytes(body)
            if not _has_header(merged, "Content-Type"):
                merged["Content-Type"] = "application/octet-stream"
        else:
            text = body if isinstance(body, str) else json.dumps(body)
            data = text.encode("utf-8")
            if not _has_header(merged, "Content-Type"):
                merged["Content-Type"] = "application/json"
        try:
            return self._session.post(
                self._url(path), data=data, headers=merged, timeout=timeout
            )
        except requests.RequestException as exc:
            raise CloudError(f"network error: {exc}") from exc