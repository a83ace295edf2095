"""Integration tests for genorch.api.main — FastAPI REST API endpoints.

All tests use the FastAPI TestClient with an in-memory batch provider so no
network access occurs.  Tests cover every endpoint:

- ``GET /api/health`` — Version and default provider.
- ``POST /api/preflight`` — Budget checks, pack files and style
  directories, Problem+JSON rejections.
- ``POST /api/generate`` — Dry runs, batch submission, provider gating.
- ``GET /api/jobs/{id}`` — Polling.
- ``GET /api/jobs/{id}/manifest`` — Persisted manifests.
- ``POST /api/jobs/{id}/fetch`` — Result download.
- ``POST /api/jobs/{id}/cancel`` — Cancellation.
- ``POST /api/jobs/{id}/resume`` — Poll-then-fetch.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from genorch import __version__
from genorch.api.main import create_app
from genorch.core.problems import RemoteCallError

PROBLEM_JSON = "application/problem+json"


@pytest.fixture
def batch(make_batch):
    return make_batch()


@pytest.fixture
def test_client(test_config, make_context, batch):
    """TestClient running the lifespan against a fake-backed context."""
    app = create_app(test_config, context=make_context(test_config, batch=batch))
    with TestClient(app) as client:
        yield client


def _submit(client, prompts=("a lighthouse", "a fox")) -> str:
    resp = client.post("/api/generate", json={"rows": [{"prompt": p} for p in prompts]})
    assert resp.status_code == 200
    return resp.json()["jobs"][0]["jobId"]


# ---------------------------------------------------------------------------
# Health endpoint tests.
# ---------------------------------------------------------------------------


class TestHealth:
    """Test GET /api/health."""

    def test_health(self, test_client):
        resp = test_client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "version": __version__, "provider": "batch"}


# ---------------------------------------------------------------------------
# Preflight endpoint tests.
# ---------------------------------------------------------------------------


class TestPreflight:
    """Test POST /api/preflight."""

    def test_accepts_without_pack(self, test_client):
        resp = test_client.post("/api/preflight", json={"rows": [{"prompt": "a"}]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["chunks"] == 1
        assert data["uniqueRefs"] == 0

    def test_counts_unique_references(self, test_client, ref_images):
        pack = {
            "style": [
                {"path": str(ref_images["light"])},
                {"path": str(ref_images["light_copy"])},
                {"path": str(ref_images["dark"])},
            ]
        }
        resp = test_client.post("/api/preflight", json={"rows": [{"prompt": "a"}], "pack": pack})
        assert resp.status_code == 200
        assert resp.json()["uniqueRefs"] == 2

    def test_missing_reference_is_problem(self, test_client, temp_dir):
        pack = {"style": [{"path": str(temp_dir / "missing.png")}]}
        resp = test_client.post("/api/preflight", json={"rows": [{"prompt": "a"}], "pack": pack})
        assert resp.status_code == 500
        assert resp.headers["content-type"].startswith(PROBLEM_JSON)
        assert resp.json()["type"] == "preflight/error"

    def test_rejects_empty_rows(self, test_client):
        resp = test_client.post("/api/preflight", json={"rows": []})
        assert resp.status_code == 422

    def test_pack_file(self, test_client, ref_images, temp_dir):
        pack_file = temp_dir / "pack.yaml"
        pack_file.write_text(
            "style:\n" + "".join(f"  - {ref_images[k]}\n" for k in ("light", "light_copy", "dark"))
        )
        resp = test_client.post(
            "/api/preflight", json={"rows": [{"prompt": "a"}], "packPath": str(pack_file)}
        )
        assert resp.status_code == 200
        assert resp.json()["uniqueRefs"] == 2

    def test_style_dir(self, test_client, ref_images):
        resp = test_client.post(
            "/api/preflight",
            json={"rows": [{"prompt": "a"}], "styleDir": str(ref_images["light"].parent)},
        )
        assert resp.status_code == 200
        assert resp.json()["uniqueRefs"] == 2

    def test_unreadable_pack_file_is_problem(self, test_client, temp_dir):
        resp = test_client.post(
            "/api/preflight",
            json={"rows": [{"prompt": "a"}], "packPath": str(temp_dir / "missing.json")},
        )
        assert resp.status_code == 400
        assert resp.headers["content-type"].startswith(PROBLEM_JSON)
        assert resp.json()["type"] == "refs/load-error"

    def test_conflicting_pack_sources(self, test_client, temp_dir):
        resp = test_client.post(
            "/api/preflight",
            json={
                "rows": [{"prompt": "a"}],
                "pack": {"style": [{"path": "s.png"}]},
                "styleDir": str(temp_dir),
            },
        )
        assert resp.status_code == 400
        assert resp.json()["type"] == "refs/conflicting-sources"


# ---------------------------------------------------------------------------
# Generation endpoint tests.
# ---------------------------------------------------------------------------


class TestGenerate:
    """Test POST /api/generate."""

    def test_dry_run(self, test_client, batch):
        resp = test_client.post(
            "/api/generate",
            json={"rows": [{"prompt": "a"}, {"prompt": "b"}], "variants": 3, "dryRun": True},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "estimated"
        assert data["estimate"]["imageCount"] == 6
        assert data["estimate"]["concurrency"] == 2
        assert batch.submissions == []

    def test_batch_submission(self, test_client, batch, test_config):
        job_id = _submit(test_client)
        assert job_id == "job-1"
        assert len(batch.submissions) == 1
        assert (test_config.jobs_dir / "job-1.json").exists()

    def test_no_fallback_problem(self, test_client, batch):
        resp = test_client.post(
            "/api/generate",
            json={"rows": [{"prompt": "a"}], "provider": "vertex", "noFallback": True},
        )
        assert resp.status_code == 400
        assert resp.headers["content-type"].startswith(PROBLEM_JSON)
        assert resp.json()["title"] == "Vertex AI configuration missing"
        assert batch.submissions == []

    def test_fallback_reported(self, test_client):
        resp = test_client.post(
            "/api/generate", json={"rows": [{"prompt": "a"}], "provider": "vertex"}
        )
        assert resp.status_code == 200
        assert resp.json()["fallbackReason"] == "config-missing"

    def test_style_dir_dry_run(self, test_client, ref_images, batch):
        resp = test_client.post(
            "/api/generate",
            json={
                "rows": [{"prompt": "a"}],
                "styleDir": str(ref_images["light"].parent),
                "dryRun": True,
            },
        )
        assert resp.status_code == 200
        assert resp.json()["preflight"]["uniqueRefs"] == 2
        assert batch.submissions == []

    def test_unknown_provider_rejected(self, test_client):
        resp = test_client.post(
            "/api/generate", json={"rows": [{"prompt": "a"}], "provider": "dalle"}
        )
        assert resp.status_code == 422

    def test_remote_failure_is_problem(self, test_client, batch):
        batch.submit_errors.append(RemoteCallError("quota", status=403, operation="submit"))
        resp = test_client.post("/api/generate", json={"rows": [{"prompt": "a"}]})
        assert resp.status_code == 403
        assert resp.headers["content-type"].startswith(PROBLEM_JSON)


# ---------------------------------------------------------------------------
# Job endpoint tests.
# ---------------------------------------------------------------------------


class TestJobs:
    """Test the /api/jobs endpoints."""

    def test_poll(self, test_client, batch):
        job_id = _submit(test_client)
        batch.statuses = ["running"]
        resp = test_client.get(f"/api/jobs/{job_id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "running"
        assert data["changed"] is True

    def test_poll_watch(self, test_client, batch):
        job_id = _submit(test_client)
        batch.statuses = ["running", "running", "succeeded"]
        resp = test_client.get(f"/api/jobs/{job_id}", params={"watch": "true"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "succeeded"
        assert resp.json()["polls"] == 3

    def test_invalid_job_id(self, test_client):
        resp = test_client.get("/api/jobs/.hidden")
        assert resp.status_code == 400
        assert resp.json()["type"] == "jobs/invalid-id"

    def test_manifest(self, test_client):
        job_id = _submit(test_client)
        resp = test_client.get(f"/api/jobs/{job_id}/manifest")
        assert resp.status_code == 200
        data = resp.json()
        assert data["jobId"] == job_id
        assert data["estCount"] == 2

    def test_manifest_not_found(self, test_client):
        resp = test_client.get("/api/jobs/nope/manifest")
        assert resp.status_code == 404
        assert resp.headers["content-type"].startswith(PROBLEM_JSON)
        assert resp.json()["type"] == "jobs/not-found"

    def test_fetch_not_ready(self, test_client):
        job_id = _submit(test_client)
        resp = test_client.post(f"/api/jobs/{job_id}/fetch")
        assert resp.status_code == 200
        assert resp.json()["ready"] is False

    def test_fetch_into_out_dir(self, test_client, batch, test_config, light_png, result_item):
        job_id = _submit(test_client)
        batch.statuses = ["succeeded"]
        batch.results = [result_item("img-1", light_png)]
        test_client.get(f"/api/jobs/{job_id}")

        resp = test_client.post(f"/api/jobs/{job_id}/fetch", json={"outDir": "run1"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["ready"] is True
        assert [r["id"] for r in data["results"]] == ["img-1"]
        assert (test_config.out_dir / "run1" / "img-1.png").read_bytes() == light_png

    def test_fetch_rejects_escaping_out_dir(self, test_client):
        job_id = _submit(test_client)
        resp = test_client.post(f"/api/jobs/{job_id}/fetch", json={"outDir": "../elsewhere"})
        assert resp.status_code == 422

    def test_cancel(self, test_client, batch):
        job_id = _submit(test_client)
        resp = test_client.post(f"/api/jobs/{job_id}/cancel")
        assert resp.status_code == 200
        assert resp.json() == {"jobId": job_id, "status": "canceled", "manifestUpdated": True}
        assert batch.cancelled == [job_id]

        manifest = test_client.get(f"/api/jobs/{job_id}/manifest").json()
        assert manifest["statusHistory"][-1]["status"] == "canceled"

    def test_resume(self, test_client, batch, test_config, light_png, result_item):
        job_id = _submit(test_client)
        batch.statuses = ["succeeded"]
        batch.results = [result_item("img-1", light_png)]

        resp = test_client.post(f"/api/jobs/{job_id}/resume")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "succeeded"
        assert data["fetch"]["results"][0]["id"] == "img-1"
        assert (test_config.renders_dir / "img-1.png").exists()
