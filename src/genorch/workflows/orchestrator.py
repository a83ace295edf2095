"""Top-level generation orchestrator.

:class:`GenerationOrchestrator` ties the pieces together for one request:

1. **Preflight** deduplicates the reference pack and checks budgets.  A
   rejected preflight stops here and its Problems are returned.
2. **Dry run** returns an image count, time and cost estimate without any
   network call and without writing a manifest.
3. **Provider selection** picks batch or sync (with fallback, see
   :mod:`genorch.providers.selector`).
4. **Batch path**: the submission is handed to
   :class:`~genorch.workflows.batch_jobs.BatchJobManager`, one job per
   preflight chunk, and the job handles are returned immediately.
5. **Sync path**: every (row x variant) pair is generated through the retry
   policy in a bounded pool.  Each image must pass the style guard; a
   rejected image is regenerated up to ``style_guard_retries`` more times
   after a random jitter, then dropped and counted separately from errors.
   Accepted images are written atomically to ``renders_dir``.

Cancellation of the sync loop is cooperative: a
:class:`~genorch.core.concurrency.CancellationToken` stops new items from
starting while items already in flight finish.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import uuid
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Literal

from pydantic import Field

from genorch.core.concurrency import CancellationToken, run_bounded
from genorch.core.models import CamelModel, PreflightResult, PromptRow, ReferencePack
from genorch.core.preflight import preflight
from genorch.core.problems import Problem, problem_from_exception
from genorch.core.refs import resolve_pack
from genorch.core.storage import write_atomic
from genorch.core.style_guard import read_reference_images, validate_style_only_compliance
from genorch.providers.base import SyncProvider
from genorch.providers.context import ProviderContext
from genorch.providers.selector import ProviderName, ProviderSelector

from .batch_jobs import BatchJobManager, SubmitResult, ensure_png

logger = logging.getLogger(__name__)

SYNC_CONCURRENCY_CEILING = 4
IMAGES_PER_WORKER = 3


class GenerateRequest(CamelModel):
    """One generation request.

    Attributes:
        rows: Prompt rows.
        variants: Images per row (1-3).
        pack: Optional reference pack.
        pack_path: Reference pack file (JSON or YAML) used instead of *pack*.
        style_dir: Legacy flat directory of style references.
        provider: Per-job provider override.
        no_fallback: Fail instead of silently falling back to batch.
        dry_run: Estimate only; no network calls, no manifest.
        compress: Per-job override of reference compression.
        split: Per-job override of chunking.
    """

    rows: list[PromptRow] = Field(..., min_length=1)
    variants: int = Field(default=1, ge=1, le=3)
    pack: ReferencePack | None = None
    pack_path: str | None = None
    style_dir: str | None = None
    provider: ProviderName | None = None
    no_fallback: bool = False
    dry_run: bool = False
    compress: bool | None = None
    split: bool | None = None

    @property
    def image_count(self) -> int:
        return len(self.rows) * self.variants


class Estimate(CamelModel):
    image_count: int
    concurrency: int
    estimated_seconds: float
    estimated_cost_usd: float | None = None


class RenderedImage(CamelModel):
    id: str
    prompt: str
    variant: int
    path: Path
    attempts: int = 1


class GenerationOutcome(CamelModel):
    """Result of :meth:`GenerationOrchestrator.generate`.

    ``status`` is one of ``rejected`` (preflight failed), ``estimated``
    (dry run), ``submitted`` (batch jobs queued) or ``rendered`` (sync path
    finished, possibly with errors or style rejections).
    """

    status: Literal["rejected", "estimated", "submitted", "rendered"]
    preflight: PreflightResult
    provider: str | None = None
    fallback_reason: str | None = None
    estimate: Estimate | None = None
    jobs: list[SubmitResult] = Field(default_factory=list)
    images: list[RenderedImage] = Field(default_factory=list)
    style_rejected: int = 0
    not_run: int = 0
    problems: list[Problem] = Field(default_factory=list)


class _ItemOutcome:
    __slots__ = ("image", "problem", "style_rejected")

    def __init__(self, image=None, problem=None, style_rejected=False):
        self.image = image
        self.problem = problem
        self.style_rejected = style_rejected


def sync_concurrency(image_count: int, cap: int) -> int:
    """Workers for the sync path: ``min(cap, 4, ceil(n / 3))``, at least 1."""
    return max(1, min(cap, SYNC_CONCURRENCY_CEILING, math.ceil(image_count / IMAGES_PER_WORKER)))


def split_rows(rows: Sequence[PromptRow], chunks: int) -> list[list[PromptRow]]:
    """Split rows into *chunks* contiguous, nearly equal parts."""
    size = math.ceil(len(rows) / max(chunks, 1))
    return [list(rows[i : i + size]) for i in range(0, len(rows), size)]


class GenerationOrchestrator:
    """Runs generation requests against a :class:`ProviderContext`.

    Args:
        context: Providers, storage and policies.
        selector: Provider selector (built from *context* when omitted).
        jobs: Batch job manager (built from *context* when omitted).
        sleep: Awaitable sleep in seconds, used for style-guard jitter.
        rng: Uniform ``[0, 1)`` source for the jitter.
    """

    def __init__(
        self,
        context: ProviderContext,
        selector: ProviderSelector | None = None,
        jobs: BatchJobManager | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.context = context
        self.config = context.config
        self.selector = selector or ProviderSelector(context)
        self.jobs = jobs or BatchJobManager(context, sleep=sleep)
        self._sleep = sleep
        self._rng = rng

    def estimate(self, image_count: int) -> Estimate:
        concurrency = sync_concurrency(image_count, self.config.max_concurrency)
        price = self.config.price_per_image_usd
        return Estimate(
            image_count=image_count,
            concurrency=concurrency,
            estimated_seconds=math.ceil(image_count / concurrency) * self.config.seconds_per_image,
            estimated_cost_usd=round(image_count * price, 6) if price is not None else None,
        )

    async def generate(
        self, request: GenerateRequest, token: CancellationToken | None = None
    ) -> GenerationOutcome:
        """Run one request end to end.

        Raises:
            ProblemError: From provider selection under ``no_fallback``, or
                400 when a ``pack_path`` or ``style_dir`` cannot be loaded.
        """
        if request.pack_path is not None or request.style_dir is not None:
            pack = await asyncio.to_thread(
                resolve_pack, request.pack, request.pack_path, request.style_dir
            )
            request = request.model_copy(update={"pack": pack})

        for row in request.rows:
            compliant, issues = validate_style_only_compliance(row.prompt)
            if not compliant:
                logger.warning("Prompt may conflict with style-only use issues=%s", issues)

        budgets = self.config.budgets(compress=request.compress, split=request.split)
        checked = await preflight(request.rows, request.pack, budgets)
        if not checked.ok:
            return GenerationOutcome(
                status="rejected", preflight=checked, problems=list(checked.problems or [])
            )

        if request.dry_run:
            estimate = self.estimate(request.image_count)
            logger.info(
                "Dry run images=%d concurrency=%d seconds=%.0f cost=%s",
                estimate.image_count,
                estimate.concurrency,
                estimate.estimated_seconds,
                estimate.estimated_cost_usd,
            )
            return GenerationOutcome(status="estimated", preflight=checked, estimate=estimate)

        selection = await self.selector.select_with_reason(request.provider, request.no_fallback)
        if selection.kind == "batch":
            return await self._submit_batch(request, checked, selection.fallback_reason)
        return await self._render_sync(selection.provider, request, checked, token)

    async def _submit_batch(
        self, request: GenerateRequest, checked: PreflightResult, fallback_reason: str | None
    ) -> GenerationOutcome:
        style_refs = request.pack.style_paths() if request.pack else []
        parts = split_rows(request.rows, checked.chunks)
        if len(parts) > 1:
            logger.info("Submitting batch in chunks chunks=%d rows=%d", len(parts), len(request.rows))
        jobs = []
        for part in parts:
            jobs.append(
                await self.jobs.submit(
                    part, request.variants, style_refs, pack=request.pack, preflight=checked
                )
            )
        return GenerationOutcome(
            status="submitted",
            preflight=checked,
            provider=self.context.batch_provider.name,
            fallback_reason=fallback_reason,
            jobs=jobs,
        )

    async def _render_sync(
        self,
        provider: SyncProvider,
        request: GenerateRequest,
        checked: PreflightResult,
        token: CancellationToken | None,
    ) -> GenerationOutcome:
        references = read_reference_images(request.pack.style_paths()) if request.pack else []
        items = [(row, variant) for row in request.rows for variant in range(request.variants)]
        limit = sync_concurrency(len(items), self.config.max_concurrency)
        renders_dir = self.config.renders_dir
        logger.info(
            "Starting sync render images=%d concurrency=%d references=%d",
            len(items),
            limit,
            len(references),
        )

        async def render(item: tuple[PromptRow, int]) -> _ItemOutcome:
            return await self._render_one(provider, item[0], item[1], references, renders_dir)

        outcomes = await run_bounded(items, render, limit, token)

        images = [o.image for o in outcomes if o is not None and o.image is not None]
        problems = [o.problem for o in outcomes if o is not None and o.problem is not None]
        style_rejected = sum(1 for o in outcomes if o is not None and o.style_rejected)
        logger.info(
            "Sync render complete accepted=%d errors=%d style_rejected=%d not_run=%d",
            len(images),
            len(problems),
            style_rejected,
            len(outcomes.not_run),
        )
        return GenerationOutcome(
            status="rendered",
            preflight=checked,
            provider=provider.name,
            images=images,
            style_rejected=style_rejected,
            not_run=len(outcomes.not_run),
            problems=problems,
        )

    async def _render_one(
        self,
        provider: SyncProvider,
        row: PromptRow,
        variant: int,
        references: Sequence[bytes],
        renders_dir: Path,
    ) -> _ItemOutcome:
        guard = self.context.style_guard
        attempts = 1 + self.config.style_guard_retries
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                jitter_ms = self._rng() * self.config.style_guard_retry_jitter_ms
                await self._sleep(jitter_ms / 1000.0)
            try:
                data = await self.context.retry.run(
                    lambda: provider.generate(row.prompt, references), "generate"
                )
                png = await asyncio.to_thread(ensure_png, data, "Generated image")
            except Exception as e:
                problem = problem_from_exception(e, "Image generation failed", 502)
                logger.error(
                    "Generation failed variant=%d status=%d detail=%s",
                    variant,
                    problem.status,
                    problem.detail,
                )
                await self.context.ledger.record_problem(
                    "render", row.prompt, problem, metadata={"variant": variant}
                )
                return _ItemOutcome(problem=problem)

            if guard.passes(png, references):
                image_id = str(uuid.uuid4())
                path = await write_atomic(renders_dir / f"{image_id}.png", png)
                await self.context.ledger.record_success(
                    "render",
                    row.prompt,
                    str(path),
                    metadata={"variant": variant, "attempts": attempt, "provider": provider.name},
                    entry_id=image_id,
                )
                return _ItemOutcome(
                    image=RenderedImage(
                        id=image_id, prompt=row.prompt, variant=variant, path=path, attempts=attempt
                    )
                )
            logger.warning(
                "Style guard rejected generation attempt=%d/%d variant=%d", attempt, attempts, variant
            )

        logger.warning("Dropping image after style guard retries category=style-guard variant=%d", variant)
        await self.context.ledger.record_problem(
            "render",
            row.prompt,
            Problem.create(
                "Style guard rejection",
                f"Output stayed too similar to a style reference after {attempts} attempts",
                422,
                type="style-guard/rejected",
            ),
            metadata={"variant": variant, "category": "style-guard"},
        )
        return _ItemOutcome(style_rejected=True)
