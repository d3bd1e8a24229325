"""
Concurrent model listing across every credential of one provider.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

import httpx

from providerhub.config import settings
from providerhub.models.batch import (
    VIRTUAL_KEY,
    Credential,
    KeyFetchResult,
    KeyStatus,
    ProviderDefinition,
)
from providerhub.services.model_discovery import discover_provider_models
from providerhub.utils.exceptions import AggregateFetchFailure
from providerhub.utils.keys import mask_api_key

logger = logging.getLogger(__name__)

NO_KEY_PREVIEW = "no key required"

KeyResultCallback = Callable[[KeyFetchResult], None]


def _preview(credential: Credential) -> str:
    return mask_api_key(credential.value) if credential.value else NO_KEY_PREVIEW


def successful_results(results: Sequence[KeyFetchResult]) -> List[KeyFetchResult]:
    return [r for r in results if r.status == KeyStatus.SUCCESS]


class MultiKeyModelFetcher:
    """Lists a provider's models once per credential, all credentials at once.

    A failing credential is reported as an ERROR result and never stops the
    others. Only when every credential fails does fetch_all raise.
    """

    def __init__(
        self,
        backend=None,
        http_client: Optional[httpx.AsyncClient] = None,
        use_proxy_fallback: Optional[bool] = None,
    ):
        if use_proxy_fallback is None:
            use_proxy_fallback = settings.use_proxy_fallback
        self._proxy = backend if use_proxy_fallback else None
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.provider_timeout)

    async def cleanup(self):
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            await self._client.aclose()

    async def fetch_one(self, provider: ProviderDefinition, credential: Credential) -> KeyFetchResult:
        """List models with a single credential; failures become ERROR results."""
        preview = _preview(credential)
        try:
            models = await discover_provider_models(
                provider.format,
                provider.base_url,
                credential.value,
                client=self._client,
                proxy=self._proxy,
                extra_headers=dict(provider.custom_headers),
            )
        except Exception as e:
            logger.warning(f"[{provider.name}] Key {preview} failed to fetch models: {e}")
            return KeyFetchResult(
                key_ref=credential.ref, key_preview=preview, status=KeyStatus.ERROR, error=str(e)
            )

        return KeyFetchResult(
            key_ref=credential.ref,
            key_preview=preview,
            status=KeyStatus.SUCCESS,
            models=tuple(models),
        )

    async def fetch_all(
        self,
        provider: ProviderDefinition,
        credentials: Sequence[Credential],
        on_update: Optional[KeyResultCallback] = None,
    ) -> List[KeyFetchResult]:
        """
        Fetch models with every credential concurrently and wait for all of them.

        A provider without credentials is fetched once, keyless, under the
        virtual key id 0.

        Args:
            provider: Provider to query
            credentials: Credentials in request order
            on_update: Called with a PENDING result when a credential starts and
                with its final result when it finishes

        Returns:
            One result per credential, in credential order

        Raises:
            AggregateFetchFailure: No credential could list models
        """
        if not credentials:
            credentials = [Credential(ref=VIRTUAL_KEY, value=None)]

        async def run(credential: Credential) -> KeyFetchResult:
            if on_update:
                on_update(KeyFetchResult(key_ref=credential.ref, key_preview=_preview(credential)))
            result = await self.fetch_one(provider, credential)
            if on_update:
                on_update(result)
            return result

        results = list(await asyncio.gather(*(run(c) for c in credentials)))

        succeeded = successful_results(results)
        logger.info(
            f"[{provider.name}] Fetched models with {len(succeeded)}/{len(results)} credentials"
        )
        if not succeeded:
            raise AggregateFetchFailure()
        return results
