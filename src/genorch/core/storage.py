"""Durable storage: atomic file writes, job manifests and the operations ledger.

Job manifests are loose JSON files under ``jobs_dir``, one per job id, and
the ledger is an append-only JSON-lines file.  Both are single-writer per
job id: there is no file locking, so two processes driving the same job
concurrently are not supported.

All file I/O goes through aiofiles so that reads and writes do not block
the event loop while other network operations are in flight.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from .models import JobManifest, LedgerEntry
from .problems import Problem, ProblemError

logger = logging.getLogger(__name__)


async def write_atomic(path: Path, data: bytes | str) -> Path:
    """Write *data* to *path* via a temp file and ``os.replace``.

    Readers never observe a partially written file: either the old content
    or the new content is visible.

    Args:
        path: Destination file; parent directories are created.
        data: Bytes, or text encoded as UTF-8.

    Returns:
        The destination path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, str):
        data = data.encode("utf-8")
    temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(temp_path, path)
    except BaseException:
        if temp_path.exists():
            os.unlink(temp_path)
        raise
    return path


def validate_job_id(job_id: str) -> str:
    """Reject ids that could escape the jobs directory.

    Raises:
        ProblemError: 400 for empty ids, ids with path separators, or ids
            starting with ``.``.
    """
    if not job_id or "/" in job_id or "\\" in job_id or job_id.startswith("."):
        raise ProblemError.create(
            "Invalid job id",
            f"Job id {job_id!r} is not a valid identifier",
            400,
            type="jobs/invalid-id",
        )
    return job_id


class JobStore:
    """JSON manifests keyed by job id."""

    def __init__(self, jobs_dir: Path):
        self.jobs_dir = Path(jobs_dir)
        self.jobs_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, job_id: str) -> Path:
        return self.jobs_dir / f"{validate_job_id(job_id)}.json"

    def exists(self, job_id: str) -> bool:
        return self.path_for(job_id).exists()

    async def load(self, job_id: str) -> JobManifest | None:
        """Load a manifest, or ``None`` when none has been written.

        Raises:
            ProblemError: 500 if the file exists but cannot be parsed.
        """
        path = self.path_for(job_id)
        if not path.exists():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        try:
            return JobManifest.model_validate_json(content)
        except ValidationError as e:
            logger.error("Job manifest corrupted job_id=%s error=%s", job_id, e)
            raise ProblemError.create(
                "Job manifest corrupted",
                f"Manifest for job {job_id} could not be parsed",
                500,
                type="jobs/manifest-corrupted",
            ) from e

    async def save(self, manifest: JobManifest) -> Path:
        path = self.path_for(manifest.job_id)
        await write_atomic(path, json.dumps(manifest.to_json(), indent=2))
        logger.debug(
            "Job manifest saved job_id=%s status=%s", manifest.job_id, manifest.last_status
        )
        return path


class OperationsLedger:
    """Append-only JSON-lines audit log of terminal item outcomes."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def append(self, entry: LedgerEntry) -> None:
        line = json.dumps(entry.to_json(), separators=(",", ":"))
        async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
            await f.write(line + "\n")

    async def record_success(
        self,
        operation: str,
        input: str,
        output: str,
        metadata: dict[str, Any] | None = None,
        entry_id: str | None = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            id=entry_id or str(uuid.uuid4()),
            operation=operation,
            input=input,
            output=output,
            status="success",
            metadata=metadata,
        )
        await self.append(entry)
        return entry

    async def record_problem(
        self,
        operation: str,
        input: str,
        problem: Problem,
        metadata: dict[str, Any] | None = None,
        entry_id: str | None = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            id=entry_id or str(uuid.uuid4()),
            operation=operation,
            input=input,
            output="",
            status="failed",
            metadata={**(metadata or {}), "problem": problem.to_json()},
        )
        await self.append(entry)
        return entry

    async def read_entries(self) -> list[LedgerEntry]:
        """Every valid ledger line; malformed lines are skipped with a warning."""
        if not self.path.exists():
            return []
        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            content = await f.read()
        entries = []
        for line_no, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(LedgerEntry.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping invalid ledger line path=%s line=%d", self.path, line_no)
        return entries

    async def entries_for_operation(self, operation: str) -> list[LedgerEntry]:
        return [e for e in await self.read_entries() if e.operation == operation]

    async def failed_entries(self) -> list[LedgerEntry]:
        return [e for e in await self.read_entries() if e.status == "failed"]
