"""Remote generation providers and provider selection.

Modules
-------
base
    Provider base classes, boundary payload models and the reachability cache.
batch_relay
    httpx client for the batch relay service.
vertex
    Synchronous Vertex AI image provider.
probe
    Publisher model probe sweep and snapshot reader.
context
    Explicit per-run context owning the providers and shared resources.
selector
    Provider selection with health-aware fallback.
"""

from genorch.providers.base import BatchProvider, ReachabilityCache, SyncProvider
from genorch.providers.batch_relay import BatchRelayProvider
from genorch.providers.context import ProviderContext
from genorch.providers.probe import PublisherHealth, load_probe_cache, probe_publishers
from genorch.providers.selector import ProviderSelection, ProviderSelector
from genorch.providers.vertex import VertexImageProvider

__all__ = [
    "BatchProvider",
    "BatchRelayProvider",
    "ProviderContext",
    "ProviderSelection",
    "ProviderSelector",
    "PublisherHealth",
    "ReachabilityCache",
    "SyncProvider",
    "VertexImageProvider",
    "load_probe_cache",
    "probe_publishers",
]
