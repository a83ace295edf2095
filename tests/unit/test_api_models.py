"""Tests for genorch.api.models — Pydantic request models.

Tests cover:
- Required field validation on PreflightRequest.
- camelCase aliases on input and output.
- FetchRequest output directory validation.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from genorch.api.models import FetchRequest, PreflightRequest
from genorch.workflows.orchestrator import GenerateRequest


class TestPreflightRequest:
    """Test PreflightRequest Pydantic model."""

    def test_valid_minimal_request(self):
        """A request with one row should validate with no overrides."""
        req = PreflightRequest.model_validate({"rows": [{"prompt": "a harbor"}]})
        assert req.rows[0].prompt == "a harbor"
        assert req.pack is None
        assert req.compress is None
        assert req.split is None

    def test_missing_rows_raises(self):
        with pytest.raises(ValidationError):
            PreflightRequest.model_validate({})

    def test_empty_rows_raises(self):
        with pytest.raises(ValidationError):
            PreflightRequest.model_validate({"rows": []})

    def test_pack_shorthand_fields(self):
        req = PreflightRequest.model_validate(
            {"rows": [{"prompt": "a"}], "pack": {"style": [{"path": "s.png"}]}, "split": False}
        )
        assert req.pack.style_paths() == ["s.png"]
        assert req.split is False


class TestGenerateRequestAliases:
    """Test the camelCase surface of the generate payload."""

    def test_camel_case_input(self):
        req = GenerateRequest.model_validate(
            {"rows": [{"prompt": "a"}], "noFallback": True, "dryRun": True}
        )
        assert req.no_fallback is True
        assert req.dry_run is True

    def test_snake_case_input(self):
        req = GenerateRequest(rows=[{"prompt": "a"}], no_fallback=True)
        assert req.no_fallback is True

    def test_image_count(self):
        req = GenerateRequest(rows=[{"prompt": "a"}, {"prompt": "b"}], variants=3)
        assert req.image_count == 6


class TestFetchRequest:
    """Test FetchRequest Pydantic model."""

    def test_defaults(self):
        req = FetchRequest()
        assert req.out_dir is None
        assert req.style_refs == []

    @pytest.mark.parametrize("out_dir", ["run1", "runs/2026-10-16", "a_b/c-d"])
    def test_relative_dirs_accepted(self, out_dir):
        assert FetchRequest.model_validate({"outDir": out_dir}).out_dir == out_dir

    @pytest.mark.parametrize("out_dir", ["../escape", "/abs", "a/../b", "", "a//b"])
    def test_unsafe_dirs_rejected(self, out_dir):
        with pytest.raises(ValidationError):
            FetchRequest.model_validate({"outDir": out_dir})

    def test_serialises_camel_case(self):
        data = FetchRequest(out_dir="run1", style_refs=["s.png"]).to_json()
        assert data == {"outDir": "run1", "styleRefs": ["s.png"]}
