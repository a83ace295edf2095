"""Explicit provider context.

One :class:`ProviderContext` is built per process run (or per request in a
server) and handed to the selector, the batch job manager and the
orchestrator.  It owns the shared ``httpx.AsyncClient`` and a single
instance of each provider, so the synchronous provider's reachability cache
survives across selections.  Nothing here is module-level state.

Usage Example
-------------

    async with ProviderContext(config) as context:
        selector = ProviderSelector(context)
        provider = await selector.select("vertex", no_fallback=True)
"""

from __future__ import annotations

import logging

import httpx

from genorch.core.config import GenOrchConfig
from genorch.core.retry import RetryPolicy
from genorch.core.storage import JobStore, OperationsLedger
from genorch.core.style_guard import StyleGuard

from .base import BatchProvider, SyncProvider
from .batch_relay import BatchRelayProvider
from .probe import PublisherHealth
from .vertex import VertexImageProvider

logger = logging.getLogger(__name__)


class ProviderContext:
    """Providers, storage and policies shared by one orchestration stack.

    Args:
        config: Configuration for every component.
        client: Shared HTTP client; created (and closed) here when omitted.
        batch_provider: Override for the relay-backed batch provider.
        sync_provider: Override for the vertex provider.
        retry: Override for the retry policy derived from *config*.
    """

    def __init__(
        self,
        config: GenOrchConfig,
        client: httpx.AsyncClient | None = None,
        batch_provider: BatchProvider | None = None,
        sync_provider: SyncProvider | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.generate_timeout_s, connect=config.probe_timeout_s)
        )
        self.batch_provider = batch_provider or BatchRelayProvider(
            config.batch_relay_url, client=self.client
        )
        self._sync_provider = sync_provider
        self.retry = retry or RetryPolicy.from_config(config)
        self.publisher_health = PublisherHealth.from_config(config)
        self.job_store = JobStore(config.jobs_dir)
        self.ledger = OperationsLedger(config.ledger_path)
        self.style_guard = StyleGuard.from_config(config)

    @property
    def sync_configured(self) -> bool:
        return self._sync_provider is not None or bool(self.config.google_cloud_project)

    @property
    def sync_provider(self) -> SyncProvider:
        """The synchronous provider, built on first use.

        Raises:
            ValueError: If no cloud project is configured.
        """
        if self._sync_provider is None:
            self._sync_provider = VertexImageProvider(self.config, client=self.client)
        return self._sync_provider

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
            logger.debug("Provider context closed")

    async def __aenter__(self) -> ProviderContext:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
