"""Tests for genorch.core.refs — reference packs and prompt rows on disk.

Tests cover:
- Shorthand normalisation of pack documents.
- Loading JSON and YAML packs, and every load error path.
- Legacy flat style directories.
- Choosing a request pack from inline, file or directory sources.
- JSON-lines prompt files.
"""

from __future__ import annotations

import json

import pytest

from genorch.core.idempotency import generate_idempotency_key
from genorch.core.models import ReferencePack
from genorch.core.problems import ProblemError
from genorch.core.refs import (
    load_prompt_rows,
    load_reference_pack,
    normalize_pack_document,
    pack_from_style_dir,
    resolve_pack,
)


class TestNormalizePackDocument:
    """Test shorthand expansion."""

    def test_string_lists_become_path_objects(self):
        doc = normalize_pack_document({"style": ["a.png", {"path": "b.png", "weight": 0.5}]})
        assert doc["style"] == [{"path": "a.png"}, {"path": "b.png", "weight": 0.5}]

    def test_keyed_props_and_subjects(self):
        doc = normalize_pack_document(
            {
                "props": {"umbrella": "u.png", "hat": {"path": "h.png", "required": True}},
                "subject": {"alex": "alex.png"},
            }
        )
        assert doc["props"] == [
            {"label": "umbrella", "path": "u.png"},
            {"label": "hat", "path": "h.png", "required": True},
        ]
        assert doc["subject"] == [{"name": "alex", "face": "alex.png"}]

    def test_version_defaulted(self):
        assert normalize_pack_document({})["version"] == "1.0"


class TestLoadReferencePack:
    """Test pack loading from files."""

    def test_load_yaml_shorthand(self, temp_dir):
        path = temp_dir / "pack.yaml"
        path.write_text("style:\n  - a.png\n  - b.png\nprops:\n  umbrella: u.png\n")
        pack = load_reference_pack(path)
        assert pack.style_paths() == ["a.png", "b.png"]
        assert pack.props[0].label == "umbrella"
        assert pack.active_modes() == ["style", "prop"]

    def test_load_json(self, temp_dir):
        path = temp_dir / "pack.json"
        path.write_text(json.dumps({"version": "1.0", "pose": [{"path": "pose.png"}]}))
        assert load_reference_pack(path).all_paths() == ["pose.png"]

    @pytest.mark.parametrize(
        "name, content",
        [
            ("missing.yaml", None),
            ("empty.yaml", "   \n"),
            ("pack.txt", "style: [a.png]"),
            ("broken.yaml", "style: [a.png\n"),
            ("broken.json", "{"),
            ("list.yaml", "- a.png\n"),
            ("invalid.yaml", "lighting: [a.png]\n"),
        ],
    )
    def test_load_errors(self, temp_dir, name, content):
        path = temp_dir / name
        if content is not None:
            path.write_text(content)
        with pytest.raises(ProblemError) as exc_info:
            load_reference_pack(path)
        assert exc_info.value.status == 400
        assert exc_info.value.problem.type == "refs/load-error"


class TestStyleDirectory:
    """Test legacy flat style directories."""

    def test_images_become_style_refs(self, temp_dir):
        for name in ("b.png", "a.JPG", "notes.txt"):
            (temp_dir / name).write_bytes(b"x")
        pack = pack_from_style_dir(temp_dir)
        assert [p.rsplit("/", 1)[-1] for p in pack.style_paths()] == ["a.JPG", "b.png"]

    def test_empty_directory_rejected(self, temp_dir):
        with pytest.raises(ProblemError):
            pack_from_style_dir(temp_dir)

    def test_missing_directory_rejected(self, temp_dir):
        with pytest.raises(ProblemError):
            pack_from_style_dir(temp_dir / "nope")


class TestResolvePack:
    """Test picking the pack of a request."""

    def test_no_source(self):
        assert resolve_pack() is None

    def test_inline_pack_returned(self):
        pack = ReferencePack(style=[{"path": "s.png"}])
        assert resolve_pack(pack) is pack

    def test_pack_file(self, temp_dir):
        path = temp_dir / "pack.yml"
        path.write_text("style: [s.png]\n")
        assert resolve_pack(pack_path=path).style_paths() == ["s.png"]

    def test_style_dir(self, temp_dir):
        (temp_dir / "s.webp").write_bytes(b"x")
        assert resolve_pack(style_dir=temp_dir).style_paths() == [str(temp_dir / "s.webp")]

    def test_more_than_one_source_rejected(self, temp_dir):
        pack = ReferencePack(style=[{"path": "s.png"}])
        with pytest.raises(ProblemError) as exc_info:
            resolve_pack(pack, style_dir=temp_dir)
        assert exc_info.value.status == 400
        assert exc_info.value.problem.type == "refs/conflicting-sources"
        assert "pack, styleDir" in exc_info.value.problem.detail


class TestLoadPromptRows:
    """Test JSON-lines prompt files."""

    def test_reads_rows_and_skips_blank_lines(self, temp_dir):
        path = temp_dir / "prompts.jsonl"
        path.write_text(
            '{"prompt": "a fox", "tags": ["x", "x"]}\n\n{"prompt": "a cat", "seed": 3}\n'
        )
        rows = load_prompt_rows(path)
        assert [r.prompt for r in rows] == ["a fox", "a cat"]
        assert rows[0].tags == ("x",)
        assert rows[1].seed == 3
        assert rows[0].meta.idempotency_key == generate_idempotency_key("a fox")

    def test_invalid_row_reports_line(self, temp_dir):
        path = temp_dir / "prompts.jsonl"
        path.write_text('{"prompt": "ok"}\n{"prompt": ""}\n')
        with pytest.raises(ProblemError) as exc_info:
            load_prompt_rows(path)
        assert exc_info.value.problem.type == "prompts/invalid-row"
        assert ":2:" in exc_info.value.problem.detail

    def test_empty_file(self, temp_dir):
        path = temp_dir / "prompts.jsonl"
        path.write_text("\n")
        with pytest.raises(ProblemError) as exc_info:
            load_prompt_rows(path)
        assert exc_info.value.problem.type == "prompts/empty"

    def test_missing_file(self, temp_dir):
        with pytest.raises(ProblemError) as exc_info:
            load_prompt_rows(temp_dir / "nope.jsonl")
        assert exc_info.value.problem.type == "prompts/load-error"

    def test_row_key_from_file_kept(self, temp_dir):
        path = temp_dir / "prompts.jsonl"
        path.write_text('{"prompt": "a fox", "_meta": {"idempotencyKey": "k-1"}}\n')
        (row,) = load_prompt_rows(path)
        assert row.meta.idempotency_key == "k-1"
