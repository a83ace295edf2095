"""Tests for genorch.providers.probe — publisher health sweep and snapshot.

Tests cover:
- Response classification (healthy, degraded, error-json, non-json).
- Timeouts and network errors recorded as errors with HTTP 0.
- The sweep writing a snapshot atomically.
- Loading the snapshot: missing, unreadable, stale and naive timestamps.
- PublisherHealth lookups.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from genorch.core.problems import ProblemError
from genorch.providers.probe import (
    PUBLISHER_MODELS,
    PublisherHealth,
    classify_response,
    load_probe_cache,
    probe_publishers,
)


def _write_snapshot(path, results, timestamp="2026-01-01T00:00:00+00:00"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(
            {"timestamp": timestamp, "project": "p", "location": "us-central1", "results": results}
        )
    )


class TestClassifyResponse:
    """Test HTTP response classification."""

    @pytest.mark.parametrize(
        "response, status, code",
        [
            (httpx.Response(200, json={}), "healthy", None),
            (httpx.Response(404, json={}), "degraded", "model-not-entitled"),
            (httpx.Response(403, json={"error": {}}), "error", "error-json"),
            (httpx.Response(502, text="<html>"), "error", "non-json"),
        ],
    )
    def test_classification(self, response, status, code):
        result = classify_response("m", "https://endpoint", response)
        assert result.status == status
        assert result.code == code
        assert result.http == response.status_code
        assert result.timestamp is not None


class TestProbePublishers:
    """Test the probe sweep."""

    @pytest.mark.asyncio
    async def test_requires_project(self, test_config):
        with pytest.raises(ProblemError) as exc_info:
            await probe_publishers(test_config)
        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    async def test_sweep_writes_snapshot(self, vertex_config):
        def handler(request):
            path = request.url.path
            if "gemini-1.5-pro" in path:
                return httpx.Response(404, json={"error": "not entitled"})
            if "text-bison" in path:
                raise httpx.ReadTimeout("slow", request=request)
            if "imagegeneration" in path:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            snapshot = await probe_publishers(vertex_config, client=client)

        assert len(snapshot.results) == len(PUBLISHER_MODELS)
        by_model = {r.model: r for r in snapshot.results}
        assert by_model["gemini-1.5-flash"].status == "healthy"
        assert by_model["gemini-1.5-pro"].code == "model-not-entitled"
        assert (by_model["text-bison@002"].http, by_model["text-bison@002"].code) == (0, "timeout")
        assert by_model["imagegeneration@005"].code == "network-error"

        written = json.loads(vertex_config.probe_cache_path.read_text())
        assert written["project"] == "test-project"
        assert len(written["results"]) == len(PUBLISHER_MODELS)


class TestLoadProbeCache:
    """Test snapshot loading."""

    def test_missing_file(self, temp_dir):
        assert load_probe_cache(temp_dir / "publishers.json") is None

    def test_unreadable_file(self, temp_dir):
        path = temp_dir / "publishers.json"
        path.write_text("{oops")
        assert load_probe_cache(path) is None

    def test_stale_snapshot_still_returned(self, temp_dir):
        path = temp_dir / "publishers.json"
        _write_snapshot(path, [{"model": "m", "status": "degraded", "http": 404}])
        now = datetime(2026, 1, 5, tzinfo=timezone.utc)
        snapshot = load_probe_cache(path, stale_after=timedelta(hours=24), now=now)
        assert snapshot.result_for("m").status == "degraded"

    def test_naive_timestamp_treated_as_utc(self, temp_dir):
        path = temp_dir / "publishers.json"
        _write_snapshot(path, [], timestamp="2026-01-01T00:00:00")
        now = datetime(2026, 1, 1, 1, tzinfo=timezone.utc)
        assert load_probe_cache(path, now=now) is not None


class TestPublisherHealth:
    """Test the selector's view of the snapshot."""

    def test_no_snapshot_assumes_healthy(self, temp_dir):
        health = PublisherHealth(temp_dir / "publishers.json")
        assert health.result_for("gemini-1.5-flash") == (None, None)
        assert health.is_model_healthy("gemini-1.5-flash") is True

    def test_reads_file_on_each_query(self, temp_dir):
        path = temp_dir / "probe" / "publishers.json"
        health = PublisherHealth(path)
        _write_snapshot(path, [{"model": "gemini-1.5-flash", "status": "healthy", "http": 200}])
        assert health.is_model_healthy("gemini-1.5-flash") is True

        _write_snapshot(path, [{"model": "gemini-1.5-flash", "status": "error", "http": 500}])
        result, snapshot = health.result_for("gemini-1.5-flash")
        assert result.http == 500
        assert snapshot.project == "p"
        assert health.is_model_healthy("gemini-1.5-flash") is False

    def test_from_config(self, test_config):
        health = PublisherHealth.from_config(test_config)
        assert health.path == test_config.probe_cache_path
        assert health.stale_after == timedelta(hours=24)
