"""Style-only compliance guard.

Reference images may influence palette, texture and mood, but a generated
image must not reproduce a reference structurally.  The guard compares a
coarse perceptual hash of the output against each reference and rejects the
output when any reference is within ``hamming_max`` bits.

Perceptual Hash
---------------
The image is resized to 32x32 and converted to grayscale.  The mean
luminance of all 1024 pixels is computed, then 64 pixels are sampled at a
fixed stride of 16; each contributes one bit (1 when brighter than the mean).
Two hashes are compared by Hamming distance (0 = identical, 64 = every
sampled bit differs).

This is a cheap similarity gate, not a classifier.  Both missed copies and
rejected originals are possible.

Failure Semantics
-----------------
- No references: the image passes.
- Unreadable references are skipped.
- An unreadable generated image fails (the guard fails closed).
"""

from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

HASH_GRID = 32
HASH_BITS = 64
DEFAULT_HAMMING_MAX = 15

STYLE_ONLY_PREFIX = (
    "Use reference images strictly for style, palette, texture, and mood. "
    "Do NOT copy subject geometry, pose, or layout. "
    "Prioritize user text for subject and composition."
)

COPY_KEYWORDS = (
    "exact copy",
    "exact same",
    "exactly like",
    "replicate",
    "duplicate",
    "mirror",
    "clone",
    "identical",
    "same as",
)


class GuardConfig(BaseModel):
    """Similarity threshold persisted as ``{"hammingMax": n}``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    hamming_max: int = Field(default=DEFAULT_HAMMING_MAX, ge=0, le=HASH_BITS)


DEFAULT_GUARD_CONFIG = GuardConfig()


def phash64(data: bytes) -> int:
    """64-bit average-luminance hash of an encoded image.

    Raises:
        OSError: If Pillow cannot decode *data*.
    """
    with Image.open(io.BytesIO(data)) as image:
        pixels = image.convert("L").resize((HASH_GRID, HASH_GRID)).tobytes()
    average = sum(pixels) / len(pixels)
    step = len(pixels) // HASH_BITS
    value = 0
    for i in range(HASH_BITS):
        value = (value << 1) | (1 if pixels[i * step] > average else 0)
    return value


def hamming(a: int, b: int) -> int:
    return (a ^ b).bit_count()


def similarity(a: int, b: int) -> int:
    """Percentage similarity of two hashes (100 = identical)."""
    return round((1 - hamming(a, b) / HASH_BITS) * 100)


class StyleGuard:
    """Hamming-distance gate between generated output and style references.

    Args:
        hamming_max: Distance at or below which the output counts as a copy.
        enabled: When False every image passes.
    """

    def __init__(self, hamming_max: int = DEFAULT_HAMMING_MAX, enabled: bool = True):
        if not 0 <= hamming_max <= HASH_BITS:
            raise ValueError(f"hamming_max must be within 0..{HASH_BITS}, got {hamming_max}")
        self.hamming_max = hamming_max
        self.enabled = enabled

    @classmethod
    def from_config(cls, config) -> StyleGuard:
        return cls(config.style_guard_hamming_max, enabled=config.style_guard_enabled)

    def reference_hashes(self, references: Iterable[bytes]) -> list[int]:
        hashes = []
        for index, data in enumerate(references):
            try:
                hashes.append(phash64(data))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable style reference index=%d error=%s", index, e)
        return hashes

    def passes(self, generated: bytes, references: Sequence[bytes]) -> bool:
        """True if *generated* is far enough from every reference."""
        if not self.enabled:
            return True
        if not references:
            logger.debug("No style references, passing by default")
            return True
        try:
            generated_hash = phash64(generated)
        except (OSError, ValueError) as e:
            logger.error("Style guard could not hash generated image error=%s", e)
            return False
        return self.passes_hashes(generated_hash, self.reference_hashes(references))

    def passes_hashes(self, generated_hash: int, reference_hashes: Sequence[int]) -> bool:
        for index, ref_hash in enumerate(reference_hashes):
            distance = hamming(generated_hash, ref_hash)
            if distance <= self.hamming_max:
                logger.warning(
                    "Style guard rejection reference=%d distance=%d threshold=%d similarity=%d%%",
                    index,
                    distance,
                    self.hamming_max,
                    similarity(generated_hash, ref_hash),
                )
                return False
        return True


def passes_style_guard(
    generated: bytes,
    references: Sequence[bytes],
    config: GuardConfig = DEFAULT_GUARD_CONFIG,
) -> bool:
    return StyleGuard(config.hamming_max).passes(generated, references)


def read_reference_images(paths: Iterable[str | Path]) -> list[bytes]:
    """Read reference files, skipping any that are missing or unreadable."""
    buffers = []
    for path in paths:
        try:
            buffers.append(Path(path).read_bytes())
        except OSError as e:
            logger.warning("Skipping missing style reference path=%s error=%s", path, e)
    return buffers


def load_guard_config(path: str | Path) -> GuardConfig:
    """Load a guard config file, falling back to defaults when invalid."""
    try:
        return GuardConfig.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning("Failed to load guard config, using defaults path=%s error=%s", path, e)
        return DEFAULT_GUARD_CONFIG


def save_guard_config(config: GuardConfig, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.model_dump(by_alias=True), indent=2), encoding="utf-8")


def validate_style_only_compliance(prompt: str) -> tuple[bool, list[str]]:
    """Flag prompts that ask for the reference to be copied.

    Returns:
        ``(compliant, issues)``.
    """
    lowered = prompt.lower()
    issues = []
    if any(keyword in lowered for keyword in COPY_KEYWORDS):
        issues.append("Prompt may encourage direct copying")
    return not issues, issues
