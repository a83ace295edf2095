"""Provider selection with health-aware fallback.

Resolution for one selection:

1. The desired provider is the per-job override, else the configured
   default (``batch`` unless ``NN_PROVIDER=vertex``).
2. ``batch`` always succeeds.  The batch provider is a queue and is never
   health-gated.
3. ``vertex`` must clear three gates, in order:

   a. a cloud project is configured (else 400),
   b. the publisher snapshot does not mark the primary model unhealthy
      (else 403, carrying the cached HTTP code),
   c. the provider answers a minimal probe, cached for five minutes
      (else 503).

   A failed gate falls back to batch with a logged reason, unless the
   caller passed ``no_fallback``, in which case the gate's Problem is
   raised as a :class:`~genorch.core.problems.ProblemError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from genorch.core.problems import ProblemError

from .base import BatchProvider, SyncProvider
from .context import ProviderContext

logger = logging.getLogger(__name__)

ProviderName = Literal["batch", "vertex"]


@dataclass(frozen=True)
class ProviderSelection:
    """Outcome of one selection.

    Attributes:
        provider: The provider to use.
        requested: Provider name that was asked for.
        fallback_reason: Why a vertex request fell back to batch, if it did.
    """

    provider: BatchProvider | SyncProvider
    requested: ProviderName
    fallback_reason: str | None = None

    @property
    def kind(self) -> str:
        return self.provider.kind


class ProviderSelector:
    """Chooses the provider for a job from a :class:`ProviderContext`."""

    def __init__(self, context: ProviderContext):
        self.context = context

    async def select(
        self, override: ProviderName | None = None, no_fallback: bool = False
    ) -> BatchProvider | SyncProvider:
        """Return the provider for a job (see module docstring)."""
        return (await self.select_with_reason(override, no_fallback)).provider

    async def select_with_reason(
        self, override: ProviderName | None = None, no_fallback: bool = False
    ) -> ProviderSelection:
        config = self.context.config
        desired: ProviderName = override or config.provider
        if desired not in ("batch", "vertex"):
            raise ProblemError.create(
                "Unknown provider",
                f"Provider {desired!r} is not supported",
                400,
                type="provider/unknown",
            )

        if desired == "batch":
            logger.info("Selected provider=batch requested=%s", desired)
            return ProviderSelection(self.context.batch_provider, desired)

        if not self.context.sync_configured:
            return self._fall_back(
                no_fallback,
                "config-missing",
                ProblemError.create(
                    "Vertex AI configuration missing",
                    "GOOGLE_CLOUD_PROJECT must be set to use the vertex provider",
                    400,
                    type="provider/config-missing",
                ),
            )

        result, snapshot = self.context.publisher_health.result_for(config.primary_model)
        if result is not None and result.status != "healthy":
            return self._fall_back(
                no_fallback,
                "model-unhealthy",
                ProblemError.create(
                    "Model entitlement missing",
                    f"Publisher probe marks {config.primary_model} as {result.status}",
                    403,
                    type="provider/model-unhealthy",
                    probeTimestamp=snapshot.timestamp.isoformat(),
                    modelStatus=result.status,
                    httpCode=result.http,
                ),
            )

        sync = self.context.sync_provider
        if not await sync.check_reachable():
            return self._fall_back(
                no_fallback,
                "unreachable",
                ProblemError.create(
                    "Vertex AI unavailable",
                    "The vertex provider did not answer its reachability probe",
                    503,
                    type="provider/unavailable",
                ),
            )

        logger.info("Selected provider=vertex requested=%s", desired)
        return ProviderSelection(sync, desired)

    def _fall_back(self, no_fallback: bool, reason: str, error: ProblemError) -> ProviderSelection:
        if no_fallback:
            logger.error(
                "Provider gate failed reason=%s status=%d no_fallback=True", reason, error.status
            )
            raise error
        logger.warning("Falling back to batch provider reason=%s", reason)
        return ProviderSelection(self.context.batch_provider, "vertex", fallback_reason=reason)
