"""Hashing helpers for idempotency keys and submission fingerprints."""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Sequence
from datetime import date, datetime, timezone

from .models import PromptMeta, PromptRow

_WHITESPACE = re.compile(r"\s+")


def sha256_hex(data: str | bytes) -> str:
    """Hex sha256 of *data* (strings are UTF-8 encoded)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def normalize_for_key(text: str) -> str:
    """Lowercase, trim and collapse whitespace so cosmetic edits share a key."""
    return _WHITESPACE.sub(" ", text.strip().lower())


def day_bucket(when: datetime | date | None = None) -> str:
    """UTC day (``YYYY-MM-DD``) used to scope idempotency keys."""
    if when is None:
        when = datetime.now(timezone.utc)
    if isinstance(when, datetime):
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc)
        when = when.date()
    return when.isoformat()


def generate_idempotency_key(
    prompt: str,
    source_image: str | None = None,
    when: datetime | date | None = None,
) -> str:
    """Key identifying one prompt for one source image on one UTC day.

    Args:
        prompt: Prompt text; normalised before hashing.
        source_image: Optional source image path.
        when: Day to bucket into (defaults to today, UTC).

    Returns:
        Hex sha256 digest.
    """
    parts = [normalize_for_key(prompt), source_image or "", day_bucket(when)]
    return sha256_hex("|".join(parts))


def with_idempotency_key(row: PromptRow, when: datetime | date | None = None) -> PromptRow:
    """Return *row* with ``_meta.idempotencyKey`` set, keeping an existing key."""
    if row.meta is not None and row.meta.idempotency_key:
        return row
    key = generate_idempotency_key(row.prompt, row.source_image, when)
    return row.model_copy(update={"meta": PromptMeta(idempotency_key=key)})


def _row_identity(row: PromptRow) -> dict:
    identity: dict = {"tags": list(row.tags), "seed": row.seed}
    if row.meta is not None and row.meta.idempotency_key:
        identity["key"] = row.meta.idempotency_key
    else:
        identity["prompt"] = row.prompt
        identity["sourceImage"] = row.source_image
    return identity


def submission_fingerprint(
    rows: Sequence[PromptRow],
    variants: int,
    style_refs: Sequence[str] | None = None,
) -> str:
    """Canonical hash of a batch submission.

    A row carrying an idempotency key is identified by that key in place of
    its prompt text and source image.  Rows keep their order (the remote job
    addresses results by position), but reference paths are sorted since
    their order carries no meaning.  The result is stored as ``promptsHash``
    on the job manifest and used to keep at most one identical submission in
    flight.
    """
    payload = {
        "rows": [_row_identity(row) for row in rows],
        "variants": variants,
        "styleRefs": sorted(style_refs or []),
    }
    return sha256_hex(json.dumps(payload, sort_keys=True, separators=(",", ":")))
