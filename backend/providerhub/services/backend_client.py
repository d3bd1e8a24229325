"""
Async client for the provider backend's REST API (platforms, keys, models).
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Type

import httpx

from providerhub.config import settings
from providerhub.models.entities import ApiKey, Model, Platform, RateLimitConfig
from providerhub.utils.exceptions import BackendError, CreationError

logger = logging.getLogger(__name__)


def model_payload(name: str, alias: str, key_ids: Sequence[int]) -> Dict[str, Any]:
    return {"name": name, "alias": alias, "api_keys": [{"id": key_id} for key_id in key_ids]}


def _error_detail(response: httpx.Response) -> str:
    """Pull a readable message out of an error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("message") or data.get("error")
        if detail:
            return str(detail)
    return response.text[:200]


class BackendClient:
    """Thin async wrapper over the backend's platform/key/model endpoints.

    Read failures raise BackendError; rejected writes raise CreationError.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        api_prefix: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.api_prefix = (settings.backend_api_prefix if api_prefix is None else api_prefix).rstrip("/")
        token = token if token is not None else settings.backend_token

        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or settings.backend_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()

    async def cleanup(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        error_class: Type[BackendError] = BackendError,
    ) -> Any:
        url = f"{self.api_prefix}{path}"
        logger.debug(f"Backend request: {method} {url}")
        try:
            response = await self._client.request(method, url, json=json, params=params)
        except httpx.HTTPError as e:
            raise error_class(f"{method} {url} failed: {e}") from e

        if response.is_error:
            raise error_class(
                f"{method} {url} failed: HTTP {response.status_code} {_error_detail(response)}",
                status=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # --- Platforms ---

    async def list_platforms(self) -> List[Platform]:
        data = await self._request("GET", "/platforms")
        return [Platform.model_validate(p) for p in data or []]

    async def get_platform(self, platform_id: int) -> Platform:
        data = await self._request("GET", f"/platforms/{platform_id}")
        return Platform.model_validate(data)

    async def create_platform(
        self,
        name: str,
        format: str,
        base_url: str,
        rate_limit: Optional[RateLimitConfig] = None,
        custom_headers: Optional[Dict[str, str]] = None,
    ) -> Platform:
        payload: Dict[str, Any] = {
            "name": name,
            "format": format,
            "base_url": base_url,
            "rate_limit": (rate_limit or RateLimitConfig()).model_dump(),
        }
        if custom_headers:
            payload["custom_headers"] = custom_headers
        data = await self._request("POST", "/platforms", json=payload, error_class=CreationError)
        return Platform.model_validate(data)

    async def delete_platform(self, platform_id: int) -> None:
        await self._request("DELETE", f"/platforms/{platform_id}", error_class=CreationError)

    # --- API keys ---

    async def list_keys(self, platform_id: int) -> List[ApiKey]:
        data = await self._request("GET", f"/platforms/{platform_id}/keys")
        return [ApiKey.model_validate(k) for k in data or []]

    async def create_key(self, platform_id: int, value: str) -> ApiKey:
        data = await self._request(
            "POST", f"/platforms/{platform_id}/keys", json={"value": value}, error_class=CreationError
        )
        return ApiKey.model_validate(data)

    async def delete_key(self, platform_id: int, key_id: int) -> None:
        await self._request("DELETE", f"/platforms/{platform_id}/keys/{key_id}", error_class=CreationError)

    # --- Models ---

    async def list_models(self, platform_id: int) -> List[Model]:
        data = await self._request("GET", f"/platforms/{platform_id}/models")
        return [Model.model_validate(m) for m in data or []]

    async def create_model(self, platform_id: int, name: str, alias: str, key_ids: Sequence[int]) -> Model:
        data = await self._request(
            "POST",
            f"/platforms/{platform_id}/models",
            json=model_payload(name, alias, key_ids),
            error_class=CreationError,
        )
        return Model.model_validate(data)

    async def create_models_batch(self, platform_id: int, models: List[Dict[str, Any]]) -> int:
        """Create models in one backend transaction. Returns the created count."""
        data = await self._request(
            "POST",
            f"/platforms/{platform_id}/models/batch",
            json={"models": models},
            error_class=CreationError,
        )
        return int((data or {}).get("created_count", len(models)))

    async def update_model(
        self, platform_id: int, model_id: int, name: str, alias: str, key_ids: Sequence[int]
    ) -> Model:
        data = await self._request(
            "PUT",
            f"/platforms/{platform_id}/models/{model_id}",
            json=model_payload(name, alias, key_ids),
            error_class=CreationError,
        )
        return Model.model_validate(data)

    async def delete_model(self, platform_id: int, model_id: int) -> None:
        await self._request("DELETE", f"/platforms/{platform_id}/models/{model_id}", error_class=CreationError)

    async def delete_models_batch(self, platform_id: int, model_ids: Sequence[int]) -> int:
        """Delete several models at once. Returns the deleted count."""
        data = await self._request(
            "DELETE",
            f"/platforms/{platform_id}/models/batch",
            json={"ids": list(model_ids)},
            error_class=CreationError,
        )
        return int((data or {}).get("deleted_count", len(model_ids)))

    # --- Proxy ---

    async def proxy(self, request_config: Dict[str, Any]) -> Any:
        """Send an external request through the backend's same-origin proxy."""
        return await self._request("POST", "/proxy", json=request_config)
