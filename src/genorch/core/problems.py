"""Problem+JSON (RFC 7807) error objects and the exceptions that carry them.

Every user-facing failure produced by the orchestrator is shaped as a
:class:`Problem`.  Problems are value objects: each failure site mints a new
one with a fresh ``instance`` UUID, and nothing mutates them afterwards.

Two exception types cross module boundaries:

- :class:`ProblemError` wraps a single Problem.  Configuration errors,
  provider gating under ``no_fallback``, the poll safety cap and invalid job
  ids are all raised this way, so front ends only need one handler.
- :class:`RemoteCallError` is raised by remote clients for non-2xx responses
  and malformed payloads.  It carries the numeric HTTP ``status`` when one is
  known, which is what :mod:`genorch.core.retry` uses to decide whether an
  attempt is worth repeating.
"""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class Problem(BaseModel):
    """RFC 7807 problem details.

    Attributes:
        type: URI reference (or short slug) identifying the problem type.
        title: Short, human-readable summary.
        detail: Occurrence-specific explanation.
        status: HTTP-equivalent status code, always 400-599.
        instance: UUID identifying this occurrence; never reused.
        extensions: Optional extra members (probe timestamps, HTTP codes, ...).
    """

    model_config = ConfigDict(frozen=True)

    type: str = "about:blank"
    title: str
    detail: str | None = None
    status: int = Field(..., ge=400, le=599)
    instance: uuid.UUID = Field(default_factory=uuid.uuid4)
    extensions: dict[str, Any] | None = None

    @field_serializer("instance")
    def _serialize_instance(self, value: uuid.UUID) -> str:
        return str(value)

    @classmethod
    def create(
        cls,
        title: str,
        detail: str | None,
        status: int,
        type: str = "about:blank",
        **extensions: Any,
    ) -> Problem:
        """Mint a new Problem with a fresh ``instance``.

        Args:
            title: Short summary.
            detail: Occurrence-specific explanation.
            status: Status code in [400, 599].
            type: Problem type slug.
            **extensions: Optional extension members.

        Returns:
            A new Problem.
        """
        return cls(
            type=type,
            title=title,
            detail=detail,
            status=status,
            extensions=extensions or None,
        )

    def to_json(self) -> dict[str, Any]:
        """Serialise to a Problem+JSON document (``None`` members omitted)."""
        return self.model_dump(mode="json", exclude_none=True)


class ProblemError(Exception):
    """Exception carrying a single :class:`Problem`."""

    def __init__(self, problem: Problem) -> None:
        super().__init__(problem.detail or problem.title)
        self.problem = problem

    @property
    def status(self) -> int:
        return self.problem.status

    @classmethod
    def create(
        cls,
        title: str,
        detail: str | None,
        status: int,
        type: str = "about:blank",
        **extensions: Any,
    ) -> ProblemError:
        return cls(Problem.create(title, detail, status, type=type, **extensions))


class RemoteCallError(Exception):
    """A remote call failed with an optional HTTP status.

    Attributes:
        status: HTTP status code, or ``None`` for failures without one
            (malformed payloads, empty generations).  ``None`` is treated as
            transient by the retry policy.
        operation: Name of the remote operation (``"submit"``, ``"poll"``...).
    """

    def __init__(self, message: str, *, status: int | None = None, operation: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.operation = operation

    def to_problem(self, title: str | None = None) -> Problem:
        status = self.status if self.status and 400 <= self.status <= 599 else 502
        return Problem.create(
            title or f"Remote {self.operation or 'call'} failed",
            str(self),
            status,
            type="remote/error",
        )


def problem_from_exception(exc: BaseException, title: str, status: int = 500) -> Problem:
    """Convert any exception into a Problem without leaking a traceback.

    ``ProblemError`` keeps its own Problem and ``RemoteCallError`` keeps its
    HTTP status; anything else becomes a generic Problem with *status*.
    """
    if isinstance(exc, ProblemError):
        return exc.problem
    if isinstance(exc, RemoteCallError):
        return exc.to_problem(title)
    return Problem.create(title, str(exc) or type(exc).__name__, status)
