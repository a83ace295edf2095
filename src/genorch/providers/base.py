"""Base classes and boundary payloads for remote generation providers.

Two provider shapes exist:

- :class:`BatchProvider` - an asynchronous queue: ``submit`` returns a job
  id, the job is then polled until terminal, results are fetched and the job
  can be cancelled.  Batch providers are never health-gated.
- :class:`SyncProvider` - a per-request image API: ``generate`` returns
  image bytes for one prompt.  It is only used once proven reachable, and
  ``check_reachable`` caches that proof for a few minutes.

Remote responses are validated into the pydantic payloads below before they
reach the rest of the package; a malformed response becomes a
``RemoteCallError`` at the boundary instead of a dict flowing inward.

Usage Example
-------------
Writing a provider for tests or a new backend:

    >>> class EchoProvider(SyncProvider):
    ...     name = "echo"
    ...     description = "Returns the same image for every prompt"
    ...
    ...     async def generate(self, prompt, references=()):
    ...         return PNG_BYTES
    ...
    ...     async def probe(self):
    ...         return True
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Any, Literal

from pydantic import ConfigDict, Field

from genorch.core.models import CamelModel, PromptRow

logger = logging.getLogger(__name__)

REACHABILITY_TTL_S = 300.0


class RemotePayload(CamelModel):
    """Strict boundary model: unknown fields are a malformed response."""

    model_config = ConfigDict(extra="forbid")


class BatchSubmission(RemotePayload):
    job_id: str = Field(..., min_length=1)
    est_count: int = Field(..., ge=0)


class BatchStatus(RemotePayload):
    status: Literal["pending", "running", "succeeded", "failed", "canceled"]
    completed: int | None = None
    total: int | None = None
    errors: list[Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("succeeded", "failed", "canceled")


class BatchResultItem(RemotePayload):
    id: str
    prompt: str
    out_url: str | None = None


class BatchResults(RemotePayload):
    results: list[BatchResultItem]
    problems: list[Any] = Field(default_factory=list)


class CancelResult(RemotePayload):
    status: Literal["canceled", "not_found"]


class ReachabilityCache:
    """In-memory TTL cache of one provider's reachability.

    Not persisted: a fresh process always probes again.

    Args:
        ttl_s: Seconds a probe result stays valid.
        clock: Monotonic clock in seconds (injected by tests).
    """

    def __init__(self, ttl_s: float = REACHABILITY_TTL_S, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self._clock = clock
        self._value: bool | None = None
        self._checked_at: float | None = None

    def get(self) -> bool | None:
        """Cached value, or ``None`` if never probed or expired."""
        if self._checked_at is None or self._clock() - self._checked_at >= self.ttl_s:
            return None
        return self._value

    def set(self, value: bool) -> None:
        self._value = value
        self._checked_at = self._clock()

    def invalidate(self) -> None:
        self._value = None
        self._checked_at = None


class BatchProvider(ABC):
    """Abstract base class for asynchronous batch providers.

    Attributes
    ----------
    name : str
        Provider name recorded in job manifests
    description : str
        Brief description of the backend
    kind : str
        Always ``"batch"``
    """

    name: str = "gemini-batch"
    description: str = "Asynchronous batch generation"
    kind: Literal["batch"] = "batch"

    @abstractmethod
    async def submit(
        self,
        rows: Sequence[PromptRow],
        variants: int,
        style_refs: Sequence[str],
        idempotency_key: str | None = None,
    ) -> BatchSubmission:
        """Queue a job and return its id and estimated image count."""

    @abstractmethod
    async def poll(self, job_id: str) -> BatchStatus:
        """Current remote status of a job."""

    @abstractmethod
    async def fetch(self, job_id: str) -> BatchResults:
        """Result items of a finished job."""

    @abstractmethod
    async def cancel(self, job_id: str) -> CancelResult:
        """Request cancellation of a job."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


class SyncProvider(ABC):
    """Abstract base class for synchronous, per-request image providers.

    Attributes
    ----------
    name : str
        Provider name
    description : str
        Brief description of the backend
    kind : str
        Always ``"sync"``
    reachability : ReachabilityCache
        Cached result of the last :meth:`probe`
    """

    name: str = "vertex"
    description: str = "Synchronous image generation"
    kind: Literal["sync"] = "sync"

    def __init__(self, reachability: ReachabilityCache | None = None) -> None:
        self.reachability = reachability or ReachabilityCache()

    @abstractmethod
    async def generate(self, prompt: str, references: Sequence[bytes] = ()) -> bytes:
        """Generate one image for *prompt* and return its encoded bytes."""

    @abstractmethod
    async def probe(self) -> bool:
        """Issue a minimal request; True when the backend answered."""

    async def check_reachable(self) -> bool:
        """Reachability, probing only when the cached value has expired."""
        cached = self.reachability.get()
        if cached is not None:
            return cached
        try:
            reachable = await self.probe()
        except Exception as e:
            logger.warning("Reachability probe raised provider=%s error=%s", self.name, e)
            reachable = False
        self.reachability.set(reachable)
        logger.info("Reachability probed provider=%s reachable=%s", self.name, reachable)
        return reachable

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"
