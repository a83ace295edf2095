"""Loading reference packs and prompt rows from disk.

Reference packs are JSON or YAML documents.  Shorthand forms are accepted
and normalised before validation::

    style: [a.png, b.png]             # -> [{path: a.png}, {path: b.png}]
    props: {umbrella: umbrella.png}   # -> [{label: umbrella, path: ...}]
    subject: {alex: alex_face.png}    # -> [{name: alex, face: ...}]

The legacy form is a flat directory whose images are all style references.

Every loading failure is reported as a 400 ``ProblemError`` so front ends
can return it unchanged.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .idempotency import with_idempotency_key
from .models import PromptRow, ReferencePack
from .problems import ProblemError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".webp"})

_LIST_ROLES = ("style", "pose", "environment")


def _keyed_to_list(value: dict, key: str, field: str) -> list[dict]:
    items = []
    for name, item in value.items():
        if isinstance(item, str):
            items.append({key: name, field: item})
        elif isinstance(item, dict):
            items.append({key: name, **item})
    return items


def normalize_pack_document(document: dict[str, Any]) -> dict[str, Any]:
    """Expand shorthand notation into the full reference-pack schema."""
    normalized = dict(document)
    for role in _LIST_ROLES:
        if isinstance(normalized.get(role), list):
            normalized[role] = [
                {"path": item} if isinstance(item, str) else item for item in normalized[role]
            ]
    if isinstance(normalized.get("props"), dict):
        normalized["props"] = _keyed_to_list(normalized["props"], "label", "path")
    if isinstance(normalized.get("subject"), dict):
        normalized["subject"] = _keyed_to_list(normalized["subject"], "name", "face")
    if not normalized.get("version"):
        normalized["version"] = "1.0"
    return normalized


def _load_error(path: Path, detail: str) -> ProblemError:
    logger.error("Failed to load reference pack path=%s detail=%s", path, detail)
    return ProblemError.create(
        "Reference pack load failed", detail, 400, type="refs/load-error"
    )


def load_reference_pack(path: str | Path) -> ReferencePack:
    """Load a reference pack from a ``.json``, ``.yaml`` or ``.yml`` file.

    Args:
        path: Pack file.

    Returns:
        The validated ReferencePack.

    Raises:
        ProblemError: 400 ``refs/load-error`` for missing or empty files,
            unsupported extensions, parse errors and schema violations.
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise _load_error(path, f"Cannot read reference pack: {e.strerror or e}") from e
    if not content.strip():
        raise _load_error(path, "Reference pack file is empty")

    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            document = yaml.safe_load(content)
        elif suffix == ".json":
            document = json.loads(content)
        else:
            raise _load_error(
                path, f"Unsupported reference pack format: {suffix}. Use .json or .yaml"
            )
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise _load_error(path, f"Invalid {suffix.lstrip('.').upper()} in reference pack: {e}") from e

    if not isinstance(document, dict):
        raise _load_error(path, "Reference pack must be a mapping")

    try:
        pack = ReferencePack.model_validate(normalize_pack_document(document))
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise _load_error(path, f"Invalid reference pack: {errors}") from e

    logger.info(
        "Reference pack loaded path=%s version=%s modes=%s total=%d",
        path,
        pack.version,
        ",".join(pack.active_modes()),
        pack.total_count(),
    )
    return pack


def pack_from_style_dir(directory: str | Path) -> ReferencePack:
    """Build a style-only pack from every image in a flat directory.

    Raises:
        ProblemError: 400 if the directory is missing or holds no images.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ProblemError.create(
            "Style directory not found",
            f"{directory} is not a directory",
            400,
            type="refs/load-error",
        )
    images = sorted(
        p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
    )
    if not images:
        raise ProblemError.create(
            "No style references",
            f"No .jpg, .jpeg, .png or .webp files found in {directory}",
            400,
            type="refs/load-error",
        )
    logger.info("Legacy style directory loaded path=%s count=%d", directory, len(images))
    return ReferencePack(style=[{"path": str(p)} for p in images])


def load_prompt_rows(path: str | Path) -> list[PromptRow]:
    """Read a JSON-lines prompts file.

    Blank lines are ignored.  Rows without ``_meta.idempotencyKey`` get a
    key for today (UTC), so a rerun of the same file shares its submission
    fingerprint.

    Raises:
        ProblemError: 400 when the file is unreadable, empty, or contains an
            invalid row.
    """
    path = Path(path)
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise ProblemError.create(
            "Prompts file unreadable", f"Cannot read {path}: {e.strerror or e}", 400,
            type="prompts/load-error",
        ) from e

    rows = []
    for line_no, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            rows.append(with_idempotency_key(PromptRow.model_validate_json(line)))
        except ValidationError as e:
            raise ProblemError.create(
                "Invalid prompt row",
                f"{path}:{line_no}: {e.errors()[0]['msg']}",
                400,
                type="prompts/invalid-row",
            ) from e

    if not rows:
        raise ProblemError.create(
            "No prompts", f"{path} contains no prompt rows", 400, type="prompts/empty"
        )
    logger.info("Prompt rows loaded path=%s count=%d", path, len(rows))
    return rows


def resolve_pack(
    pack: ReferencePack | None = None,
    pack_path: str | Path | None = None,
    style_dir: str | Path | None = None,
) -> ReferencePack | None:
    """Pick the reference pack of a request from at most one source.

    Args:
        pack: Inline pack.
        pack_path: JSON or YAML pack file, see :func:`load_reference_pack`.
        style_dir: Legacy flat style directory, see :func:`pack_from_style_dir`.

    Returns:
        The pack, or None when no source is given.

    Raises:
        ProblemError: 400 ``refs/conflicting-sources`` when more than one
            source is given, or any load error of the chosen source.
    """
    given = [
        name
        for name, value in (("pack", pack), ("packPath", pack_path), ("styleDir", style_dir))
        if value is not None
    ]
    if len(given) > 1:
        raise ProblemError.create(
            "Conflicting reference sources",
            f"Give only one of pack, packPath or styleDir (got {', '.join(given)})",
            400,
            type="refs/conflicting-sources",
        )
    if pack_path is not None:
        return load_reference_pack(pack_path)
    if style_dir is not None:
        return pack_from_style_dir(style_dir)
    return pack
