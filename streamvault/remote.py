"""
JSON-over-HTTP transport for external services (attestation, registry,
vault custody, vault address derivation).

Every failure mode (connect error, timeout, non-2xx, non-JSON body) is
normalized to ExternalServiceError so ResilientRemoteCall can apply one
fallback policy.
"""

from typing import Any, Dict, Optional

import httpx

from .errors import ExternalServiceError


MAX_ERROR_BODY_CHARS = 200


class RemoteService:
    """Thin httpx wrapper bound to one service base URL."""

    def __init__(self, name: str, base_url: str = "", api_key: str = "",
                 timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.name = name
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def request(self, method: str, path: str,
                payload: Optional[Dict[str, Any]] = None) -> Any:
        if not self.configured:
            raise ExternalServiceError(self.name, "service not configured")
        try:
            response = self._get_client().request(method, path, json=payload)
        except httpx.TimeoutException:
            raise ExternalServiceError(
                self.name, f"{method} {path} timed out after {self.timeout}s"
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError(self.name, f"{method} {path} failed: {e}")

        if response.status_code >= 400:
            body = (response.text or "")[:MAX_ERROR_BODY_CHARS]
            raise ExternalServiceError(
                self.name,
                body or f"{method} {path} returned {response.status_code}",
                status=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise ExternalServiceError(
                self.name, f"{method} {path} returned invalid JSON",
                status=response.status_code,
            )

    def post(self, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("POST", path, payload or {})

    def get(self, path: str) -> Any:
        return self.request("GET", path)
