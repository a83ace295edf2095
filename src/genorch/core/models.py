"""Pydantic data models shared across the orchestrator.

These models define the JSON documents the orchestrator reads and writes:
prompt rows, reference packs, the reference registry built by preflight,
job manifests, the publisher probe snapshot and operations ledger entries.

All models serialise with camelCase aliases (``jobId``, ``submittedAt``,
``statusHistory``...) so the on-disk formats stay compatible with the other
tools that read them, while Python code uses snake_case attributes.  Input
is accepted in either spelling.

Models
------
PromptRow
    One prompt produced upstream by remixing; read-only here.
ReferencePack
    Versioned bag of reference images grouped by role.
RefRegistryEntry / RefRegistry
    One entry per unique reference content hash.
PreflightBudgets / PreflightResult
    Operator policy and the outcome of one preflight pass.
JobManifest / StatusEntry
    Durable record of one async batch job.
ProbeResult / ProbeCacheSnapshot
    Publisher health snapshot written by the probe sweep.
LedgerEntry
    One line of the append-only operations ledger.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .problems import Problem

JobStatus = Literal["pending", "running", "succeeded", "failed", "canceled"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "canceled"})

HealthStatus = Literal["healthy", "degraded", "error"]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model serialising with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Prompt rows.
# ---------------------------------------------------------------------------


class PromptMeta(CamelModel):
    idempotency_key: str | None = None


class PromptRow(CamelModel):
    """A single prompt consumed by generation.

    Attributes:
        prompt: Prompt text, 1-2000 characters.
        source_image: Optional path of the image the prompt was remixed from.
        tags: Ordered set of tags (duplicates dropped, first occurrence wins).
        seed: Optional generation seed.
        meta: Optional metadata, serialised under ``_meta``.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore"
    )

    prompt: str = Field(..., min_length=1, max_length=2000)
    source_image: str | None = None
    tags: tuple[str, ...] = ()
    seed: int | None = None
    meta: PromptMeta | None = Field(default=None, alias="_meta")

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(dict.fromkeys(value))
        return value


# ---------------------------------------------------------------------------
# Reference packs.
# ---------------------------------------------------------------------------


class StyleRef(CamelModel):
    """Palette, texture and mood only."""

    path: str
    weight: float = Field(default=1.0, ge=0.0, le=1.0)


class PropRef(CamelModel):
    """Object that should be present without copying composition."""

    label: str
    path: str
    weight: float = Field(default=1.0, ge=0.0, le=1.0)
    required: bool = False


class SubjectRef(CamelModel):
    """Named identity reference (face image)."""

    name: str
    face: str
    description: str | None = None
    extras: dict[str, Any] | None = None


class PoseRef(CamelModel):
    path: str
    description: str | None = None


class EnvironmentRef(CamelModel):
    path: str
    scene: str | None = None
    preserve: list[str] | None = None


class PackMetadata(CamelModel):
    author: str | None = None
    created: datetime | None = None
    description: str | None = None
    tags: list[str] | None = None


class ReferencePack(CamelModel):
    """Reference images grouped by role.

    Every role is optional.  Paths are plain filesystem paths; the pack is
    read-only input to preflight.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="forbid"
    )

    version: str = "1.0"
    style: list[StyleRef] | None = None
    props: list[PropRef] | None = None
    subject: list[SubjectRef] | None = None
    pose: list[PoseRef] | None = None
    environment: list[EnvironmentRef] | None = None
    metadata: PackMetadata | None = None

    def all_paths(self) -> list[str]:
        """Flatten every reference path across roles (duplicates kept)."""
        paths: list[str] = []
        paths.extend(ref.path for ref in self.style or [])
        paths.extend(ref.path for ref in self.props or [])
        paths.extend(ref.face for ref in self.subject or [])
        paths.extend(ref.path for ref in self.pose or [])
        paths.extend(ref.path for ref in self.environment or [])
        return paths

    def style_paths(self) -> list[str]:
        return [ref.path for ref in self.style or []]

    def total_count(self) -> int:
        return len(self.all_paths())

    def active_modes(self) -> list[str]:
        """Roles that have at least one reference, in canonical order."""
        roles = {
            "style": self.style,
            "prop": self.props,
            "subject": self.subject,
            "pose": self.pose,
            "environment": self.environment,
        }
        return [name for name, refs in roles.items() if refs]

    def digest(self) -> str:
        """Short stable digest of the pack's reference listing."""
        stable = json.dumps(
            {
                "version": self.version,
                "style": sorted(ref.path for ref in self.style or []),
                "props": sorted(f"{ref.label}:{ref.path}" for ref in self.props or []),
                "subject": sorted(f"{ref.name}:{ref.face}" for ref in self.subject or []),
                "pose": sorted(ref.path for ref in self.pose or []),
                "environment": sorted(ref.path for ref in self.environment or []),
            },
            sort_keys=True,
        )
        return hashlib.sha256(stable.encode("utf-8")).hexdigest()[:12]


# ---------------------------------------------------------------------------
# Reference registry and preflight.
# ---------------------------------------------------------------------------


class RefRegistryEntry(CamelModel):
    """One unique reference image, keyed by content hash."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    hash: str
    path: str
    size: int
    compressed: bool = False
    compressed_size: int | None = None
    mime_type: str | None = None


class RefRegistry(CamelModel):
    """Deduplicated references for one submission."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    entries: dict[str, RefRegistryEntry] = Field(default_factory=dict)
    total_size: int = 0
    compressed_size: int = 0

    @property
    def unique_count(self) -> int:
        return len(self.entries)

    @property
    def average_ref_size(self) -> float:
        return self.compressed_size / max(self.unique_count, 1)


class PreflightBudgets(CamelModel):
    """Operator-controlled payload policy."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_max_bytes: int = Field(default=200 * 1024 * 1024, ge=1)
    item_max_bytes: int = Field(default=8 * 1024 * 1024, ge=1)
    max_refs_per_item: int = Field(default=8, ge=1)
    max_images_per_job: int = Field(default=2000, ge=1)
    compress: bool = True
    split: bool = True


class ByteCounts(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    before: int = 0
    after: int = 0


class PreflightResult(CamelModel):
    """Outcome of one preflight pass.

    A rejected result always has ``chunks == 0`` and at least one problem.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    ok: bool
    chunks: int = Field(..., ge=0)
    unique_refs: int = 0
    bytes: ByteCounts = Field(default_factory=ByteCounts)
    registry: RefRegistry | None = None
    problems: list[Problem] | None = None

    @model_validator(mode="after")
    def _check_consistency(self) -> PreflightResult:
        if not self.ok and (self.chunks != 0 or not self.problems):
            raise ValueError("rejected preflight results need chunks == 0 and problems")
        if self.ok and self.chunks < 1:
            raise ValueError("accepted preflight results need at least one chunk")
        return self

    def summary(self, compressed: bool) -> dict[str, Any]:
        return {
            "chunks": self.chunks,
            "uniqueRefs": self.unique_refs,
            "bytes": self.bytes.to_json(),
            "compressed": compressed,
        }


# ---------------------------------------------------------------------------
# Job manifests.
# ---------------------------------------------------------------------------


class StatusEntry(CamelModel):
    timestamp: datetime
    status: JobStatus
    completed: int | None = None
    total: int | None = None


class JobManifest(CamelModel):
    """Durable record of one async batch job.

    ``status_history`` is append-only and time-ordered; use
    :meth:`record_status` rather than appending directly.
    """

    job_id: str
    provider: str = "gemini-batch"
    submitted_at: datetime = Field(default_factory=utcnow)
    est_count: int = 0
    prompts_hash: str | None = None
    style_refs_hash: str | None = None
    status_history: list[StatusEntry] = Field(default_factory=list)
    problems: list[Problem] = Field(default_factory=list)
    ref_mode: str | None = None
    reference_pack_digest: str | None = None
    preflight: dict[str, Any] | None = None

    @property
    def last_status(self) -> str | None:
        return self.status_history[-1].status if self.status_history else None

    @property
    def is_terminal(self) -> bool:
        return self.last_status in TERMINAL_STATUSES

    def record_status(
        self,
        status: JobStatus,
        *,
        completed: int | None = None,
        total: int | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Append a status entry if *status* differs from the last one.

        Timestamps never go backwards: a clock that reads earlier than the
        previous entry is clamped to that entry's timestamp.

        Returns:
            True if an entry was appended.
        """
        if status == self.last_status:
            return False
        timestamp = now or utcnow()
        if self.status_history and timestamp < self.status_history[-1].timestamp:
            timestamp = self.status_history[-1].timestamp
        self.status_history.append(
            StatusEntry(timestamp=timestamp, status=status, completed=completed, total=total)
        )
        return True


# ---------------------------------------------------------------------------
# Publisher probe snapshot.
# ---------------------------------------------------------------------------


class ProbeResult(CamelModel):
    model: str
    status: HealthStatus
    http: int
    code: str | None = None
    timestamp: datetime | None = None
    endpoint: str | None = None


class ProbeCacheSnapshot(CamelModel):
    """Publisher health written wholesale by the probe sweep."""

    timestamp: datetime
    project: str
    location: str
    results: list[ProbeResult] = Field(default_factory=list)

    def result_for(self, model: str) -> ProbeResult | None:
        return next((r for r in self.results if r.model == model), None)

    def is_model_healthy(self, model: str) -> bool:
        """Models absent from the snapshot are assumed healthy."""
        result = self.result_for(model)
        return result is None or result.status == "healthy"


# ---------------------------------------------------------------------------
# Operations ledger.
# ---------------------------------------------------------------------------


class LedgerEntry(CamelModel):
    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    operation: str
    input: str
    output: str = ""
    status: Literal["success", "partial", "failed"]
    metadata: dict[str, Any] | None = None
