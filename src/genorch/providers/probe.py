"""Publisher model health: the probe sweep and the snapshot it leaves behind.

The sweep (:func:`probe_publishers`) sends one minimal request per known
publisher model and classifies the answer:

======  ==========  =======================
HTTP    status      code
======  ==========  =======================
200     healthy
404     degraded    ``model-not-entitled``
other   error       ``error-json`` / ``non-json``
none    error       ``timeout`` / ``network-error``
======  ==========  =======================

The results are written wholesale and atomically to
``{out_dir}/probe/publishers.json``.

Readers go through :func:`load_probe_cache`.  A missing or unreadable file
yields ``None``, which callers treat as "assume healthy" so that missing
infrastructure never blocks a submission.  An explicit ``degraded`` or
``error`` entry is authoritative until the sweep runs again, even when the
snapshot is older than the staleness horizon (staleness is only logged).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from genorch.core.config import GenOrchConfig
from genorch.core.models import ProbeCacheSnapshot, ProbeResult, utcnow
from genorch.core.problems import ProblemError
from genorch.core.storage import write_atomic

from .vertex import get_access_token, vertex_endpoint

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_S = 2.0

_GENERATE_BODY = {"contents": [{"role": "user", "parts": [{"text": "probe"}]}]}

PUBLISHER_MODELS: list[tuple[str, str, dict[str, Any]]] = [
    ("gemini-2.5-flash-image-preview", "generateContent", _GENERATE_BODY),
    ("gemini-1.5-pro", "generateContent", _GENERATE_BODY),
    ("gemini-1.5-flash", "generateContent", _GENERATE_BODY),
    ("textembedding-gecko@003", "predict", {"instances": [{"content": "probe"}]}),
    (
        "text-bison@002",
        "predict",
        {"instances": [{"prompt": "probe"}], "parameters": {"temperature": 0.2}},
    ),
    (
        "imagegeneration@005",
        "predict",
        {"instances": [{"prompt": "simple icon"}], "parameters": {"sampleCount": 1, "size": "64x64"}},
    ),
]


def classify_response(model: str, endpoint: str, response: httpx.Response) -> ProbeResult:
    """Map one probe response to a ProbeResult."""
    if response.status_code == 200:
        status, code = "healthy", None
    elif response.status_code == 404:
        status, code = "degraded", "model-not-entitled"
    else:
        is_json = "application/json" in response.headers.get("content-type", "")
        status, code = "error", "error-json" if is_json else "non-json"
    return ProbeResult(
        model=model,
        status=status,
        http=response.status_code,
        code=code,
        timestamp=utcnow(),
        endpoint=endpoint,
    )


async def probe_model(
    client: httpx.AsyncClient,
    model: str,
    method: str,
    body: dict[str, Any],
    token: str,
    project: str,
    location: str,
    timeout: float = PROBE_TIMEOUT_S,
) -> ProbeResult:
    endpoint = vertex_endpoint(project, location, model, method)
    logger.debug("Probing model model=%s endpoint=%s", model, endpoint)
    try:
        response = await client.post(
            endpoint,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
        )
    except httpx.TimeoutException:
        logger.error("Probe timed out model=%s", model)
        return ProbeResult(
            model=model, status="error", http=0, code="timeout", timestamp=utcnow(), endpoint=endpoint
        )
    except httpx.HTTPError as e:
        logger.error("Probe failed model=%s error=%s", model, e)
        return ProbeResult(
            model=model,
            status="error",
            http=0,
            code="network-error",
            timestamp=utcnow(),
            endpoint=endpoint,
        )
    return classify_response(model, endpoint, response)


async def probe_publishers(
    config: GenOrchConfig,
    client: httpx.AsyncClient | None = None,
    output_path: Path | None = None,
) -> ProbeCacheSnapshot:
    """Probe every publisher model and write the snapshot.

    Args:
        config: Supplies project, location, credentials and the cache path.
        client: Optional shared client.
        output_path: Override for ``config.probe_cache_path``.

    Returns:
        The snapshot that was written.

    Raises:
        ProblemError: 400 when no cloud project is configured.
        RemoteCallError: When no access token can be obtained.
    """
    project = config.google_cloud_project
    if not project:
        raise ProblemError.create(
            "Vertex AI configuration missing",
            "GOOGLE_CLOUD_PROJECT is required for the publisher probe",
            400,
            type="probe/config-missing",
        )
    location = config.google_cloud_location
    output_path = output_path or config.probe_cache_path
    logger.info("Starting publisher model probe project=%s location=%s", project, location)

    token = await get_access_token(config)
    owns_client = client is None
    client = client or httpx.AsyncClient()
    try:
        results = []
        for model, method, body in PUBLISHER_MODELS:
            result = await probe_model(client, model, method, body, token, project, location)
            logger.info(
                "Model probe completed model=%s status=%s http=%d",
                result.model,
                result.status,
                result.http,
            )
            results.append(result)
    finally:
        if owns_client:
            await client.aclose()

    snapshot = ProbeCacheSnapshot(
        timestamp=utcnow(), project=project, location=location, results=results
    )
    await write_atomic(output_path, json.dumps(snapshot.to_json(), indent=2))
    logger.info(
        "Publisher probe cache written path=%s healthy=%d degraded=%d error=%d",
        output_path,
        sum(r.status == "healthy" for r in results),
        sum(r.status == "degraded" for r in results),
        sum(r.status == "error" for r in results),
    )
    return snapshot


def load_probe_cache(
    path: Path, stale_after: timedelta = timedelta(hours=24), now: datetime | None = None
) -> ProbeCacheSnapshot | None:
    """Read the publisher snapshot, or ``None`` if absent or unreadable."""
    path = Path(path)
    if not path.exists():
        logger.debug("No publisher probe cache path=%s", path)
        return None
    try:
        snapshot = ProbeCacheSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning("Unreadable publisher probe cache, assuming healthy path=%s error=%s", path, e)
        return None
    written = snapshot.timestamp
    if written.tzinfo is None:
        written = written.replace(tzinfo=timezone.utc)
    age = (now or utcnow()) - written
    if age > stale_after:
        logger.warning(
            "Publisher probe cache is stale path=%s age_hours=%.1f", path, age.total_seconds() / 3600
        )
    return snapshot


class PublisherHealth:
    """Read-only view of the publisher snapshot used by provider selection.

    The file is re-read on every query, so a sweep that rewrites it takes
    effect on the next selection without restarting the process.
    """

    def __init__(self, path: Path, stale_after: timedelta = timedelta(hours=24)):
        self.path = Path(path)
        self.stale_after = stale_after

    @classmethod
    def from_config(cls, config: GenOrchConfig) -> PublisherHealth:
        return cls(config.probe_cache_path, timedelta(hours=config.probe_cache_stale_hours))

    def snapshot(self) -> ProbeCacheSnapshot | None:
        return load_probe_cache(self.path, self.stale_after)

    def result_for(self, model: str) -> tuple[ProbeResult | None, ProbeCacheSnapshot | None]:
        snapshot = self.snapshot()
        if snapshot is None:
            return None, None
        return snapshot.result_for(model), snapshot

    def is_model_healthy(self, model: str) -> bool:
        result, _ = self.result_for(model)
        return result is None or result.status == "healthy"
