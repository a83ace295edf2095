"""Pydantic request models for the orchestrator HTTP API.

``POST /api/generate`` accepts
:class:`~genorch.workflows.orchestrator.GenerateRequest` directly; the
models here cover the remaining endpoints.  Responses are the camelCase
JSON of the workflow result models.

Models
------
PreflightRequest
    Payload for ``POST /api/preflight`` - rows and an optional pack
    (inline, a pack file or a legacy style directory),
    checked against the configured budgets without submitting anything.
FetchRequest
    Payload for ``POST /api/jobs/{job_id}/fetch`` and ``/resume``.
"""

from __future__ import annotations

from pydantic import Field

from genorch.core.models import CamelModel, PromptRow, ReferencePack


class PreflightRequest(CamelModel):
    """Request body for ``POST /api/preflight``.

    Attributes:
        rows: Prompt rows to budget.
        pack: Optional reference pack.
        pack_path: Reference pack file (JSON or YAML) used instead of *pack*.
        style_dir: Legacy flat directory of style references.
        compress: Override of reference compression for this check.
        split: Override of chunking for this check.
    """

    rows: list[PromptRow] = Field(..., min_length=1)
    pack: ReferencePack | None = None
    pack_path: str | None = None
    style_dir: str | None = None
    compress: bool | None = None
    split: bool | None = None


class FetchRequest(CamelModel):
    """Request body for fetching batch results.

    Attributes:
        out_dir: Directory name below the configured output directory.
            Defaults to ``renders``.
        style_refs: Style reference paths used to re-validate results with
            the style guard.  Missing files are skipped.
    """

    out_dir: str | None = Field(default=None, pattern=r"^[A-Za-z0-9_\-]+(/[A-Za-z0-9_\-]+)*$")
    style_refs: list[str] = Field(default_factory=list)
