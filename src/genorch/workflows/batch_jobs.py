"""Asynchronous batch job state machine: submit, poll, fetch, cancel, resume.

Every job has a JSON manifest under ``{out_dir}/jobs/{jobId}.json`` whose
``statusHistory`` records each status change.  Because all state lives in
that file, any operation can be run from a fresh process after a crash and
picks up from the last persisted status.

States
------
``pending`` -> ``running`` -> ``succeeded`` | ``failed``, with ``canceled``
reachable from any state through :meth:`BatchJobManager.cancel`.  The three
right-hand states are terminal.

Polling
-------
A single poll records the remote status if it changed.  With ``watch=True``
polling continues until a terminal status, sleeping
``min(base * factor ** min(polls, 10), cap)`` milliseconds between polls.
Exceeding the safety cap raises a 504 ``ProblemError``; the loop is never
silently truncated.

Fetching
--------
Each result item is validated and decoded, optionally checked by the style
guard, and written atomically to ``{out_dir}/{id}.png``.  A failing item
becomes a Problem on the report and the manifest; it never aborts the fetch.
Every item outcome is appended to the operations ledger.

Usage Example
-------------

    async with ProviderContext(config) as context:
        jobs = BatchJobManager(context)
        submitted = await jobs.submit(rows, variants=2, style_refs=[])
        await jobs.poll(submitted.job_id, watch=True)
        report = await jobs.fetch(submitted.job_id, config.out_dir / "batch")
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import io
import logging
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any

from PIL import Image
from pydantic import Field

from genorch.core.idempotency import submission_fingerprint
from genorch.core.models import (
    CamelModel,
    JobManifest,
    PreflightResult,
    PromptRow,
    ReferencePack,
)
from genorch.core.problems import Problem, ProblemError, problem_from_exception
from genorch.core.storage import validate_job_id, write_atomic
from genorch.providers.base import BatchResultItem
from genorch.providers.context import ProviderContext

logger = logging.getLogger(__name__)

LARGE_BATCH_WARNING = 100
MAX_VARIANTS = 3
POLL_EXPONENT_CAP = 10


class SubmitResult(CamelModel):
    job_id: str
    est_count: int
    manifest_path: Path


class PollSnapshot(CamelModel):
    job_id: str
    status: str
    completed: int | None = None
    total: int | None = None
    polls: int = 1
    changed: bool = False
    status_history_length: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in ("succeeded", "failed", "canceled")


class FetchedImage(CamelModel):
    id: str
    prompt: str
    path: Path


class FetchReport(CamelModel):
    job_id: str
    ready: bool = True
    status: str | None = None
    results: list[FetchedImage] = Field(default_factory=list)
    problems: list[Problem] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.problems)


class CancelReport(CamelModel):
    job_id: str
    status: str
    manifest_updated: bool = False


class ResumeReport(CamelModel):
    job_id: str
    status: str
    message: str
    fetch: FetchReport | None = None


def poll_delay_ms(
    polls: int, base_ms: float = 2000, factor: float = 1.5, cap_ms: float = 30000
) -> float:
    """Sleep before the next watch-mode poll, after *polls* polls so far."""
    return min(base_ms * factor ** min(polls, POLL_EXPONENT_CAP), cap_ms)


def _remote_problem(error: Any, title: str = "Batch processing error") -> Problem:
    """Normalise a remote error entry (string or Problem-like dict)."""
    if isinstance(error, dict) and "title" in error:
        status = error.get("status")
        return Problem.create(
            str(error["title"]),
            error.get("detail"),
            status if isinstance(status, int) and 400 <= status <= 599 else 500,
            type=str(error.get("type") or "about:blank"),
        )
    return Problem.create(title, error if isinstance(error, str) else repr(error), 500)


def ensure_png(data: bytes, label: str = "Image") -> bytes:
    """Return *data* as PNG bytes, re-encoding other formats.

    PNG input is verified and returned unchanged. Undecodable data raises a
    422 :class:`ProblemError` naming *label*.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            if image.format == "PNG":
                image.verify()
                return data
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
            return buffer.getvalue()
    except (OSError, ValueError) as e:
        raise ProblemError.create(
            "Invalid image data", f"{label} is not a decodable image", 422
        ) from e


def _is_safe_item_id(item_id: str) -> bool:
    return bool(item_id) and "/" not in item_id and "\\" not in item_id and not item_id.startswith(".")


class BatchJobManager:
    """Drives batch jobs through the provider in a :class:`ProviderContext`.

    Args:
        context: Supplies the batch provider, retry policy, job store, ledger
            and style guard.
        sleep: Awaitable sleep taking seconds (injected by tests).
    """

    def __init__(
        self,
        context: ProviderContext,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.context = context
        self.config = context.config
        self.provider = context.batch_provider
        self.store = context.job_store
        self.ledger = context.ledger
        self._sleep = sleep
        self._in_flight: dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # submit
    # ------------------------------------------------------------------

    async def submit(
        self,
        rows: Sequence[PromptRow],
        variants: int,
        style_refs: Sequence[str] = (),
        pack: ReferencePack | None = None,
        preflight: PreflightResult | None = None,
    ) -> SubmitResult:
        """Queue a batch job and persist its manifest.

        Identical submissions (same rows, variants and references) made
        while one is still in flight share that submission instead of
        reaching the remote API twice.

        Raises:
            ProblemError: 400 for empty rows or variants outside 1..3.
            Exception: The remote error once retries are exhausted.
        """
        if not rows:
            raise ProblemError.create(
                "No prompts", "At least one prompt row is required", 400, type="batch/empty"
            )
        if not 1 <= variants <= MAX_VARIANTS:
            raise ProblemError.create(
                "Invalid variants",
                f"variants must be between 1 and {MAX_VARIANTS}, got {variants}",
                400,
                type="batch/invalid-variants",
            )

        fingerprint = submission_fingerprint(rows, variants, style_refs)
        pending = self._in_flight.get(fingerprint)
        if pending is not None:
            logger.info("Joining in-flight submission fingerprint=%s", fingerprint[:12])
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(
            self._submit(rows, variants, style_refs, pack, preflight, fingerprint)
        )
        self._in_flight[fingerprint] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._in_flight.pop(fingerprint, None)
            else:
                task.add_done_callback(lambda _: self._in_flight.pop(fingerprint, None))

    async def _submit(
        self,
        rows: Sequence[PromptRow],
        variants: int,
        style_refs: Sequence[str],
        pack: ReferencePack | None,
        preflight: PreflightResult | None,
        fingerprint: str,
    ) -> SubmitResult:
        est_count = len(rows) * variants
        if est_count > LARGE_BATCH_WARNING:
            logger.warning(
                "Large batch submission est_count=%d threshold=%d", est_count, LARGE_BATCH_WARNING
            )

        try:
            submission = await self.context.retry.run(
                lambda: self.provider.submit(rows, variants, style_refs, idempotency_key=fingerprint),
                "batch-submit",
            )
        except Exception as e:
            problem = problem_from_exception(e, "Batch submit failed", 502)
            await self.ledger.record_problem(
                "batch-submit", fingerprint, problem, metadata={"rows": len(rows), "variants": variants}
            )
            raise

        if pack is not None:
            style_refs_hash = pack.digest()
        elif style_refs:
            style_refs_hash = hashlib.sha256("\n".join(sorted(style_refs)).encode()).hexdigest()[:12]
        else:
            style_refs_hash = None

        manifest = JobManifest(
            job_id=submission.job_id,
            provider=self.provider.name,
            est_count=est_count,
            prompts_hash=fingerprint,
            style_refs_hash=style_refs_hash,
            ref_mode=",".join(pack.active_modes()) if pack else ("style" if style_refs else None),
            reference_pack_digest=pack.digest() if pack else None,
            preflight=preflight.summary(self.config.preflight_compress) if preflight else None,
        )
        manifest.record_status("pending")
        path = await self.store.save(manifest)
        await self.ledger.record_success(
            "batch-submit",
            fingerprint,
            submission.job_id,
            metadata={"estCount": est_count, "rows": len(rows), "variants": variants},
        )
        logger.info(
            "Batch job submitted job_id=%s est_count=%d manifest=%s",
            submission.job_id,
            est_count,
            path,
        )
        return SubmitResult(job_id=submission.job_id, est_count=est_count, manifest_path=path)

    # ------------------------------------------------------------------
    # poll
    # ------------------------------------------------------------------

    async def _load_or_create(self, job_id: str) -> JobManifest:
        manifest = await self.store.load(job_id)
        if manifest is None:
            logger.info("No manifest found, starting a minimal one job_id=%s", job_id)
            manifest = JobManifest(job_id=job_id, provider=self.provider.name, est_count=0)
        return manifest

    async def poll(self, job_id: str, watch: bool = False) -> PollSnapshot:
        """Query the remote status and record it if it changed.

        Args:
            job_id: Job to poll.
            watch: Keep polling with backoff until a terminal status.

        Raises:
            ProblemError: 400 for invalid job ids, 504 when the watch loop
                exceeds ``poll_max_attempts``.
        """
        validate_job_id(job_id)
        manifest = await self._load_or_create(job_id)
        polls = 0
        any_change = False
        while True:
            if polls >= self.config.poll_max_attempts:
                raise ProblemError.create(
                    "Polling limit exceeded",
                    f"Job {job_id} was not terminal after {polls} polls",
                    504,
                    type="batch/poll-limit",
                )
            polls += 1
            remote = await self.context.retry.run(lambda: self.provider.poll(job_id), "batch-poll")

            changed = manifest.record_status(
                remote.status, completed=remote.completed, total=remote.total
            )
            new_problems = self._merge_problems(manifest, [_remote_problem(e) for e in remote.errors or []])
            if new_problems:
                logger.warning("Job reported errors job_id=%s count=%d", job_id, new_problems)
            if changed or new_problems:
                await self.store.save(manifest)
                any_change = True
            logger.info(
                "Job %s: %s (%s/%s)",
                job_id,
                remote.status,
                remote.completed if remote.completed is not None else 0,
                remote.total if remote.total is not None else "?",
            )

            if not watch or remote.is_terminal:
                return PollSnapshot(
                    job_id=job_id,
                    status=remote.status,
                    completed=remote.completed,
                    total=remote.total,
                    polls=polls,
                    changed=any_change,
                    status_history_length=len(manifest.status_history),
                )
            delay = poll_delay_ms(
                polls,
                self.config.poll_base_delay_ms,
                self.config.poll_factor,
                self.config.poll_max_delay_ms,
            )
            await self._sleep(delay / 1000.0)

    @staticmethod
    def _merge_problems(manifest: JobManifest, problems: Sequence[Problem]) -> int:
        """Append problems whose title/detail is not yet recorded."""
        seen = {(p.title, p.detail) for p in manifest.problems}
        added = 0
        for problem in problems:
            if (problem.title, problem.detail) not in seen:
                manifest.problems.append(problem)
                seen.add((problem.title, problem.detail))
                added += 1
        return added

    # ------------------------------------------------------------------
    # fetch
    # ------------------------------------------------------------------

    async def fetch(
        self,
        job_id: str,
        out_dir: Path | None = None,
        style_refs: Sequence[bytes] | None = None,
    ) -> FetchReport:
        """Download the results of a finished job.

        Args:
            job_id: Job to fetch.
            out_dir: Destination directory (defaults to ``renders_dir``).
            style_refs: Reference images for style-guard re-validation.

        Returns:
            FetchReport; ``ready`` is False while the job is still pending,
            running, or was canceled.  A job without a manifest is fetched
            but no manifest is created for it.
        """
        validate_job_id(job_id)
        out_dir = Path(out_dir or self.config.renders_dir)
        manifest = await self.store.load(job_id)
        status = manifest.last_status if manifest is not None else None
        if status in ("pending", "running", "canceled"):
            logger.info("Job not ready for fetch job_id=%s status=%s", job_id, status)
            return FetchReport(job_id=job_id, ready=False, status=status)

        remote = await self.context.retry.run(lambda: self.provider.fetch(job_id), "batch-fetch")
        out_dir.mkdir(parents=True, exist_ok=True)

        results: list[FetchedImage] = []
        problems: list[Problem] = []
        for item in remote.results:
            try:
                path = await self._store_item(item, out_dir, style_refs)
            except Exception as e:
                problem = problem_from_exception(e, f"Failed to process result {item.id}")
                logger.warning(
                    "Fetch item failed job_id=%s item=%s status=%d detail=%s",
                    job_id,
                    item.id,
                    problem.status,
                    problem.detail,
                )
                problems.append(problem)
                await self.ledger.record_problem(
                    "batch-fetch", job_id, problem, metadata={"itemId": item.id}, entry_id=item.id
                )
                continue
            results.append(FetchedImage(id=item.id, prompt=item.prompt, path=path))
            await self.ledger.record_success(
                "batch-fetch",
                job_id,
                str(path),
                metadata={"itemId": item.id, "prompt": item.prompt},
                entry_id=item.id,
            )

        problems.extend(_remote_problem(p, "Batch item error") for p in remote.problems)
        if manifest is None:
            logger.info("No manifest to update after fetch job_id=%s", job_id)
        else:
            self._merge_problems(manifest, problems)
            await self.store.save(manifest)

        logger.info(
            "Batch fetch complete job_id=%s succeeded=%d failed=%d out_dir=%s",
            job_id,
            len(results),
            len(problems),
            out_dir,
        )
        return FetchReport(
            job_id=job_id, ready=True, status=status, results=results, problems=problems
        )

    async def _store_item(
        self, item: BatchResultItem, out_dir: Path, style_refs: Sequence[bytes] | None
    ) -> Path:
        if not _is_safe_item_id(item.id):
            raise ProblemError.create(
                "Invalid item id", f"Result id {item.id!r} is not a safe file name", 400
            )
        if not item.out_url:
            raise ProblemError.create("Missing image data", f"Result {item.id} has no image", 404)
        if not item.out_url.startswith("data:"):
            raise ProblemError.create(
                "Remote URL not supported",
                f"Result {item.id} points to a remote URL; only data URLs are supported",
                501,
            )

        _, _, encoded = item.out_url.partition(",")
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProblemError.create(
                "Invalid image data", f"Result {item.id} is not valid base64", 422
            ) from e

        png = await asyncio.to_thread(ensure_png, data, f"Result {item.id}")

        if style_refs and not self.context.style_guard.passes(png, style_refs):
            raise ProblemError.create(
                "Style guard rejection",
                f"Result {item.id} is too similar to a style reference",
                422,
                type="style-guard/rejected",
            )
        return await write_atomic(out_dir / f"{item.id}.png", png)

    # ------------------------------------------------------------------
    # cancel / resume
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str) -> CancelReport:
        """Cancel remotely and record ``canceled`` if a manifest exists."""
        validate_job_id(job_id)
        remote = await self.context.retry.run(lambda: self.provider.cancel(job_id), "batch-cancel")
        manifest = await self.store.load(job_id)
        updated = False
        if manifest is None:
            logger.info("No manifest to update on cancel job_id=%s", job_id)
        elif manifest.record_status("canceled"):
            await self.store.save(manifest)
            updated = True
        logger.info(
            "Batch job canceled job_id=%s remote_status=%s manifest_updated=%s",
            job_id,
            remote.status,
            updated,
        )
        return CancelReport(job_id=job_id, status=remote.status, manifest_updated=updated)

    async def resume(
        self,
        job_id: str,
        out_dir: Path | None = None,
        style_refs: Sequence[bytes] | None = None,
    ) -> ResumeReport:
        """Poll once; fetch if the job succeeded, otherwise report where it stands."""
        snapshot = await self.poll(job_id)
        if snapshot.status == "succeeded":
            report = await self.fetch(job_id, out_dir, style_refs)
            return ResumeReport(
                job_id=job_id,
                status=snapshot.status,
                message=f"Fetched {report.succeeded} images ({report.failed} problems)",
                fetch=report,
            )
        if snapshot.is_terminal:
            message = f"Job {job_id} is {snapshot.status}; nothing to fetch"
        else:
            message = f"Job {job_id} is {snapshot.status}; poll with watch=True to wait for completion"
        return ResumeReport(job_id=job_id, status=snapshot.status, message=message)
