"""Preflight: reference deduplication, compression and payload budgeting.

Before a submission reaches any provider, preflight builds a registry of the
unique reference images it carries and checks the estimated payload against
the operator's budgets.

Registry
--------
Every reference path across every pack role is read and hashed (sha256 of
the file content).  A hash that is already registered is skipped, so the
same image referenced under several roles, or copied to several paths,
becomes exactly one :class:`~genorch.core.models.RefRegistryEntry`.  The hash
is reserved as soon as it is computed, before any further suspension, so two
workers holding identical files can never both register it.

Raster references (``.jpg``, ``.jpeg``, ``.png``, ``.webp``) are optionally
re-encoded with Pillow: longest edge at most 1024 px, progressive JPEG at
quality 75.  A reference that cannot be compressed is kept as-is with a
warning.  Paths are processed five at a time.

Budgets
-------
Checked in order, stopping at the first violation:

1. Image count: ``rows * 3`` (the maximum variant count) against
   ``max_images_per_job``.  Rejected with 413 unless splitting is allowed.
2. Per-item payload: ``prompt bytes + 1024 + unique refs * average ref size``
   for the largest row, against ``item_max_bytes``.  Always a 413 rejection:
   splitting cannot shrink a single item.
3. Job payload: ``rows * average ref size + compressed registry size``
   against ``job_max_bytes``.  Split into ``ceil(total / job_max_bytes)``
   chunks when allowed, otherwise rejected with 413.

Unexpected errors (an unreadable reference, for example) never escape: they
become a rejected result with a single 500 ``preflight/error`` problem.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import math
from collections.abc import Sequence
from pathlib import Path

import aiofiles
from PIL import Image

from .concurrency import run_bounded
from .models import (
    ByteCounts,
    PreflightBudgets,
    PreflightResult,
    PromptRow,
    ReferencePack,
    RefRegistry,
    RefRegistryEntry,
)
from .problems import Problem

logger = logging.getLogger(__name__)

MAX_VARIANTS = 3
ITEM_METADATA_OVERHEAD = 1024
COMPRESS_MAX_EDGE = 1024
COMPRESS_QUALITY = 75
REFERENCE_CONCURRENCY = 5

_COMPRESSIBLE = frozenset({".jpg", ".jpeg", ".png", ".webp"})
_MIME_BY_SUFFIX = {".png": "image/png", ".webp": "image/webp"}


def compress_image(data: bytes) -> bytes:
    """Re-encode an image as progressive JPEG with its longest edge <= 1024 px.

    Args:
        data: Encoded source image.

    Returns:
        JPEG bytes.

    Raises:
        OSError: If Pillow cannot decode *data*.
    """
    with Image.open(io.BytesIO(data)) as image:
        image = image.convert("RGB")
        if max(image.size) > COMPRESS_MAX_EDGE:
            image.thumbnail((COMPRESS_MAX_EDGE, COMPRESS_MAX_EDGE), Image.Resampling.LANCZOS)
        buffer = io.BytesIO()
        image.save(
            buffer, format="JPEG", quality=COMPRESS_QUALITY, progressive=True, optimize=True
        )
    return buffer.getvalue()


async def build_registry(paths: Sequence[str], compress: bool) -> RefRegistry:
    """Hash, deduplicate and optionally compress reference images.

    Args:
        paths: Reference paths, duplicates allowed.
        compress: Whether to re-encode raster references.

    Returns:
        RefRegistry with one entry per distinct content hash.

    Raises:
        OSError: If a reference cannot be read.
    """
    entries: dict[str, RefRegistryEntry | None] = {}

    async def process(path: str) -> None:
        async with aiofiles.open(path, "rb") as f:
            original = await f.read()
        digest = hashlib.sha256(original).hexdigest()
        if digest in entries:
            logger.debug("Duplicate reference skipped path=%s hash=%s", path, digest[:12])
            return
        # Reserved before the next suspension point.
        entries[digest] = None

        size = len(original)
        compressed_size = size
        compressed = False
        suffix = Path(path).suffix.lower()
        if compress and suffix in _COMPRESSIBLE:
            try:
                output = await asyncio.to_thread(compress_image, original)
                compressed_size = len(output)
                compressed = True
                logger.debug(
                    "Reference compressed path=%s before=%d after=%d ratio=%.2f",
                    path,
                    size,
                    compressed_size,
                    compressed_size / size if size else 0.0,
                )
            except (OSError, ValueError) as e:
                logger.warning("Compression failed, using original path=%s error=%s", path, e)

        entries[digest] = RefRegistryEntry(
            id=f"ref_{digest[:12]}",
            hash=digest,
            path=path,
            size=size,
            compressed=compressed,
            compressed_size=compressed_size if compress else None,
            mime_type="image/jpeg" if compressed else _MIME_BY_SUFFIX.get(suffix, "image/jpeg"),
        )

    await run_bounded(list(paths), process, REFERENCE_CONCURRENCY)

    registered = {digest: entry for digest, entry in entries.items() if entry is not None}
    return RefRegistry(
        entries=registered,
        total_size=sum(e.size for e in registered.values()),
        compressed_size=sum(
            e.compressed_size if e.compressed_size is not None else e.size
            for e in registered.values()
        ),
    )


def estimate_item_size(row: PromptRow, ref_count: int, average_ref_size: float) -> float:
    """Estimated request payload for one row."""
    return len(row.prompt.encode("utf-8")) + ITEM_METADATA_OVERHEAD + ref_count * average_ref_size


def check_budgets(
    rows: Sequence[PromptRow], registry: RefRegistry, budgets: PreflightBudgets
) -> tuple[int, list[Problem]]:
    """Apply the budget checks in order.

    Returns:
        ``(chunks, problems)``; ``chunks`` is 0 whenever problems is non-empty.
    """
    image_chunks = 1
    total_images = len(rows) * MAX_VARIANTS
    if total_images > budgets.max_images_per_job:
        if not budgets.split:
            return 0, [
                Problem.create(
                    "Image count exceeds job limit",
                    f"Total images ({total_images}) exceeds limit ({budgets.max_images_per_job})",
                    413,
                    type="preflight/budget-exceeded",
                )
            ]
        image_chunks = math.ceil(total_images / budgets.max_images_per_job)

    unique = registry.unique_count
    if unique > budgets.max_refs_per_item:
        logger.warning(
            "Reference count above per-item limit unique_refs=%d max_refs_per_item=%d",
            unique,
            budgets.max_refs_per_item,
        )

    average = registry.average_ref_size
    max_item = max((estimate_item_size(row, unique, average) for row in rows), default=0)
    if max_item > budgets.item_max_bytes:
        return 0, [
            Problem.create(
                "Item payload exceeds limit",
                f"Largest item ({math.ceil(max_item)} bytes) exceeds limit "
                f"({budgets.item_max_bytes} bytes)",
                413,
                type="preflight/item-too-large",
            )
        ]

    total_job_size = len(rows) * average + registry.compressed_size
    # The size split overrides the image-count split when both apply.
    chunks = image_chunks
    if total_job_size > budgets.job_max_bytes:
        if not budgets.split:
            return 0, [
                Problem.create(
                    "Job payload exceeds limit",
                    f"Total job size ({math.ceil(total_job_size)} bytes) exceeds limit "
                    f"({budgets.job_max_bytes} bytes)",
                    413,
                    type="preflight/job-too-large",
                )
            ]
        chunks = math.ceil(total_job_size / budgets.job_max_bytes)

    if chunks > 1:
        logger.info(
            "Job will be split into chunks total_job_size=%d job_max_bytes=%d "
            "total_images=%d chunks=%d",
            total_job_size,
            budgets.job_max_bytes,
            total_images,
            chunks,
        )
    return chunks, []


async def preflight(
    rows: Sequence[PromptRow],
    pack: ReferencePack | None,
    budgets: PreflightBudgets,
) -> PreflightResult:
    """Deduplicate references and decide whether a submission fits its budgets.

    Args:
        rows: Prompt rows of the submission.
        pack: Optional reference pack.
        budgets: Payload policy.

    Returns:
        A fresh PreflightResult.  Never raises.
    """
    logger.info(
        "Starting preflight rows=%d has_pack=%s compress=%s split=%s",
        len(rows),
        pack is not None,
        budgets.compress,
        budgets.split,
    )
    if pack is None:
        return PreflightResult(ok=True, chunks=1, unique_refs=0, bytes=ByteCounts())

    try:
        registry = await build_registry(pack.all_paths(), budgets.compress)
    except Exception as e:
        logger.error("Preflight failed error=%s", e)
        return PreflightResult(
            ok=False,
            chunks=0,
            problems=[
                Problem.create(
                    "Preflight check failed",
                    str(e) or type(e).__name__,
                    500,
                    type="preflight/error",
                )
            ],
        )

    logger.info(
        "Reference registry built unique_refs=%d total_size=%d compressed_size=%d ratio=%.2f",
        registry.unique_count,
        registry.total_size,
        registry.compressed_size,
        registry.compressed_size / registry.total_size if registry.total_size else 1.0,
    )

    byte_counts = ByteCounts(before=registry.total_size, after=registry.compressed_size)
    chunks, problems = check_budgets(rows, registry, budgets)
    if problems:
        logger.warning(
            "Preflight rejected type=%s detail=%s", problems[0].type, problems[0].detail
        )
        return PreflightResult(
            ok=False,
            chunks=0,
            unique_refs=registry.unique_count,
            bytes=byte_counts,
            problems=problems,
        )
    return PreflightResult(
        ok=True,
        chunks=chunks,
        unique_refs=registry.unique_count,
        bytes=byte_counts,
        registry=registry,
    )
