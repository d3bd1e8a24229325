"""
Model discovery service for fetching available models from LLM provider APIs.

Every provider format answers with its own response shape; each is
normalized into DiscoveredModel(name, alias). When a direct request fails at
the transport level, the request can be retried through the backend's
same-origin proxy endpoint.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import orjson

from providerhub.config import settings
from providerhub.models.entities import DiscoveredModel
from providerhub.utils.exceptions import BackendError, FetchError, FormatError

logger = logging.getLogger(__name__)

# ============================================================================
# Helper Functions
# ============================================================================

AZURE_API_VERSION = "2023-03-15-preview"
ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class DiscoveryContext:
    """Transport used for one discovery call"""
    client: httpx.AsyncClient
    proxy: Any = None  # BackendClient, or None to disable the proxy fallback
    extra_headers: Dict[str, str] = field(default_factory=dict)
    timeout_ms: int = 30000


def _fetch_error(status: int, reason: str, body: str) -> FetchError:
    return FetchError(f"Failed to fetch models: {status} {reason}. Body: {body}", status=status, body=body)


def _decode_body(body: Any) -> Any:
    if isinstance(body, (str, bytes)):
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError:
            return body
    return body


def normalize_proxy_response(payload: Any) -> Any:
    """Unwrap a /proxy response, raising FetchError for proxied HTTP errors."""
    if not isinstance(payload, dict) or "body" not in payload:
        return payload

    status = payload.get("status")
    if isinstance(status, int) and status >= 400:
        body = payload.get("body")
        body_text = body if isinstance(body, str) else orjson.dumps(body or "").decode()
        raise _fetch_error(status, payload.get("statusText") or "Proxy Error", body_text)

    return _decode_body(payload.get("body"))


async def _fetch_via_proxy(ctx: DiscoveryContext, url: str, headers: Dict[str, str]) -> Any:
    request_config = {
        "url": url,
        "method": "GET",
        "headers": {"Content-Type": "application/json", **headers},
        "timeout_ms": ctx.timeout_ms,
    }
    try:
        payload = await ctx.proxy.proxy(request_config)
    except BackendError as e:
        raise FetchError(f"Proxy request failed: {e}", status=e.status) from e
    return normalize_proxy_response(payload)


async def _fetch_json(ctx: DiscoveryContext, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
    """Fetch JSON from a provider endpoint, falling back to the proxy on transport errors."""
    headers = {**ctx.extra_headers, **(headers or {})}
    try:
        response = await ctx.client.get(url, headers=headers)
    except httpx.TransportError as e:
        if ctx.proxy is None:
            raise FetchError(f"Failed to fetch models: {e}") from e
        logger.info(f"Direct request to {url} failed ({e}); retrying through proxy")
        return await _fetch_via_proxy(ctx, url, headers)

    if response.is_error:
        raise _fetch_error(response.status_code, response.reason_phrase, response.text)

    try:
        return response.json()
    except ValueError as e:
        raise FormatError(f"Provider at {url} did not return JSON") from e


def _list_field(data: Any, key: str, provider_label: str) -> List[Dict[str, Any]]:
    """Return `data[key]` if it is a list, else raise FormatError."""
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return [item for item in data[key] if isinstance(item, dict)]
    raise FormatError(f'Invalid {provider_label} API response format: expected a "{key}" array')


def _sort_by_name(models: List[DiscoveredModel]) -> List[DiscoveredModel]:
    models.sort(key=lambda m: m.name)
    return models


# ============================================================================
# Per-format discovery
# ============================================================================


async def _discover_openai_models(
    ctx: DiscoveryContext, base_url: str, api_key: Optional[str]
) -> List[DiscoveredModel]:
    """Discover models from an OpenAI-format API ({base}/v1/models)."""
    headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
    data = await _fetch_json(ctx, f"{base_url}/v1/models", headers)

    models = [
        DiscoveredModel(name=m["id"], alias="")
        for m in _list_field(data, "data", "OpenAI")
        if m.get("id")
    ]
    return _sort_by_name(models)


async def _discover_ollama_models(
    ctx: DiscoveryContext, base_url: str, api_key: Optional[str]
) -> List[DiscoveredModel]:
    """Discover models from Ollama's native API ({base}/api/tags)."""
    data = await _fetch_json(ctx, f"{base_url}/api/tags")

    models = [
        DiscoveredModel(name=m["name"], alias=m["name"])
        for m in _list_field(data, "models", "Ollama")
        if m.get("name")
    ]
    return _sort_by_name(models)


async def _discover_azure_models(
    ctx: DiscoveryContext, base_url: str, api_key: Optional[str]
) -> List[DiscoveredModel]:
    """Discover deployments from Azure OpenAI."""
    headers = {"api-key": api_key} if api_key else {}
    data = await _fetch_json(
        ctx, f"{base_url}/openai/deployments?api-version={AZURE_API_VERSION}", headers
    )

    models = [
        DiscoveredModel(name=m["id"], alias=m["id"])
        for m in _list_field(data, "data", "Azure OpenAI")
        if m.get("id")
    ]
    return _sort_by_name(models)


async def _discover_gemini_models(
    ctx: DiscoveryContext, base_url: str, api_key: Optional[str]
) -> List[DiscoveredModel]:
    """Discover models from the Gemini API ({base}/v1beta/models)."""
    headers = {"x-goog-api-key": api_key} if api_key else {}
    data = await _fetch_json(ctx, f"{base_url}/v1beta/models", headers)

    models = []
    for model in _list_field(data, "models", "Gemini"):
        full_name = model.get("name", "")
        if not full_name:
            continue
        model_id = full_name.removeprefix("models/")
        models.append(DiscoveredModel(name=model_id, alias=model_id))

    return _sort_by_name(models)


async def _discover_anthropic_models(
    ctx: DiscoveryContext, base_url: str, api_key: Optional[str]
) -> List[DiscoveredModel]:
    """Discover models from the Anthropic API ({base}/v1/models)."""
    headers = {"anthropic-version": ANTHROPIC_VERSION}
    if api_key:
        headers["x-api-key"] = api_key
    data = await _fetch_json(ctx, f"{base_url}/v1/models", headers)

    models = [
        DiscoveredModel(name=m["id"], alias="")
        for m in _list_field(data, "data", "Anthropic")
        if m.get("id")
    ]
    return _sort_by_name(models)


DISCOVERY_FUNCTIONS = {
    "openai": _discover_openai_models,
    "ollama": _discover_ollama_models,
    "azure openai": _discover_azure_models,
    "azure": _discover_azure_models,
    "gemini": _discover_gemini_models,
    "anthropic": _discover_anthropic_models,
}


async def discover_provider_models(
    provider_format: str,
    base_url: str,
    api_key: Optional[str] = None,
    *,
    client: httpx.AsyncClient,
    proxy: Any = None,
    extra_headers: Optional[Dict[str, str]] = None,
) -> List[DiscoveredModel]:
    """
    Discover available models from a provider's API.

    Args:
        provider_format: Provider format (OpenAI, Ollama, Azure OpenAI, Gemini, Anthropic),
            matched case-insensitively
        base_url: Provider base URL
        api_key: The API key for authentication (None for key-less providers)
        client: HTTP client used for the direct request
        proxy: BackendClient for the proxy fallback, or None to disable it
        extra_headers: Platform custom headers sent with every request

    Returns:
        Models sorted by name

    Raises:
        FetchError: The provider answered with an HTTP error or was unreachable
        FormatError: Unsupported format or unexpected response shape
    """
    discover = DISCOVERY_FUNCTIONS.get(provider_format.strip().lower())
    if discover is None:
        raise FormatError(f"Unsupported provider format: {provider_format}")

    ctx = DiscoveryContext(
        client=client,
        proxy=proxy,
        extra_headers=dict(extra_headers or {}),
        timeout_ms=int(settings.provider_timeout * 1000),
    )
    return await discover(ctx, base_url.rstrip("/"), api_key)
