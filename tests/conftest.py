"""Shared pytest fixtures for genorch tests."""

import asyncio
import base64
import io
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import httpx
import pytest
from PIL import Image

from genorch.core.config import GenOrchConfig
from genorch.core.models import PromptRow
from genorch.core.retry import RetryPolicy
from genorch.providers.base import (
    BatchProvider,
    BatchResultItem,
    BatchResults,
    BatchStatus,
    BatchSubmission,
    CancelResult,
    SyncProvider,
)
from genorch.providers.context import ProviderContext

_ENV_VARS = (
    "NN_PROVIDER",
    "NN_OUT_DIR",
    "NN_GOOGLE_CLOUD_PROJECT",
    "GOOGLE_CLOUD_PROJECT",
    "NN_GOOGLE_CLOUD_LOCATION",
    "GOOGLE_CLOUD_LOCATION",
    "NN_GOOGLE_ACCESS_TOKEN",
    "NN_PRICE_PER_IMAGE_USD",
    "NN_MAX_CONCURRENCY",
)


async def no_sleep(seconds: float) -> None:
    """Sleep replacement that only yields to the event loop."""
    await asyncio.sleep(0)


def make_png(pixels: list[list[int]] | None = None, size: int = 32, mode: str = "L") -> bytes:
    """Encode a grayscale image given as rows of 0-255 values."""
    image = Image.new(mode, (size, size))
    if pixels is not None:
        image.putdata([value for row in pixels for value in row])
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def half_split_png(top: int = 255, bottom: int = 0, size: int = 32) -> bytes:
    """Image whose top half is *top* and bottom half is *bottom*."""
    half = size // 2
    return make_png([[top] * size] * half + [[bottom] * size] * (size - half), size=size)


def data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode()}"


class FakeBatchProvider(BatchProvider):
    """In-memory batch provider recording every call.

    ``statuses`` is consumed one entry per poll; the last entry repeats.
    """

    name = "gemini-batch"

    def __init__(self, statuses=None, results=None, problems=None):
        self.statuses = list(statuses or ["pending"])
        self.results = list(results or [])
        self.problems = list(problems or [])
        self.submissions: list[dict] = []
        self.poll_calls = 0
        self.fetch_calls = 0
        self.cancelled: list[str] = []
        self.submit_errors: list[Exception] = []
        self.submit_delay = 0.0
        self._counter = 0

    async def submit(self, rows, variants, style_refs, idempotency_key=None):
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submissions.append(
            {
                "rows": list(rows),
                "variants": variants,
                "style_refs": list(style_refs),
                "idempotency_key": idempotency_key,
            }
        )
        await asyncio.sleep(self.submit_delay)
        self._counter += 1
        return BatchSubmission(job_id=f"job-{self._counter}", est_count=len(rows) * variants)

    async def poll(self, job_id):
        self.poll_calls += 1
        entry = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(entry, BatchStatus):
            return entry
        return BatchStatus(status=entry)

    async def fetch(self, job_id):
        self.fetch_calls += 1
        return BatchResults(results=self.results, problems=self.problems)

    async def cancel(self, job_id):
        self.cancelled.append(job_id)
        return CancelResult(status="canceled")


class FakeSyncProvider(SyncProvider):
    """Sync provider returning queued images.

    ``images`` is consumed one entry per call; the last entry repeats.  An
    entry that is an exception is raised instead.
    """

    name = "vertex"

    def __init__(self, images=None, reachable=True):
        super().__init__()
        self.images = list(images or [half_split_png()])
        self.reachable = reachable
        self.generate_calls = 0
        self.probe_calls = 0

    async def generate(self, prompt, references=()):
        self.generate_calls += 1
        entry = self.images.pop(0) if len(self.images) > 1 else self.images[0]
        await asyncio.sleep(0)
        if isinstance(entry, Exception):
            raise entry
        return entry

    async def probe(self):
        self.probe_calls += 1
        return self.reachable


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove NN_* and cloud variables that would leak into configuration."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def test_config(temp_dir: Path, clean_env) -> GenOrchConfig:
    """Create a test configuration writing below a temporary directory.

    Every delay is zero so retry, poll and jitter sleeps never wait.

    Returns:
        GenOrchConfig instance for testing
    """
    return GenOrchConfig(
        _env_file=None,
        out_dir=temp_dir / "artifacts",
        retry_base_delay_ms=0,
        poll_base_delay_ms=0,
        style_guard_retry_jitter_ms=0,
    )


@pytest.fixture
def vertex_config(temp_dir: Path, clean_env) -> GenOrchConfig:
    """Test configuration defaulting to the vertex provider with a project."""
    return GenOrchConfig(
        _env_file=None,
        out_dir=temp_dir / "artifacts",
        provider="vertex",
        google_cloud_project="test-project",
        google_access_token="test-token",
        retry_base_delay_ms=0,
        poll_base_delay_ms=0,
        style_guard_retry_jitter_ms=0,
    )


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_ms=0, sleep=no_sleep)


@pytest.fixture
def make_batch():
    """Factory for fake batch providers."""
    return FakeBatchProvider


@pytest.fixture
def make_sync():
    """Factory for fake sync providers."""
    return FakeSyncProvider


@pytest.fixture
def fake_batch() -> FakeBatchProvider:
    return FakeBatchProvider()


@pytest.fixture
def fake_sync() -> FakeSyncProvider:
    return FakeSyncProvider()


def _unrouted(request: httpx.Request) -> httpx.Response:
    return httpx.Response(599, json={"error": f"unexpected request {request.url}"})


@pytest.fixture
def make_context(fast_retry):
    """Factory for a ProviderContext wired to fakes and a mock transport."""

    def _make(config, batch=None, sync=None, handler=_unrouted, retry=None):
        return ProviderContext(
            config,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            batch_provider=batch or FakeBatchProvider(),
            sync_provider=sync,
            retry=retry or fast_retry,
        )

    return _make


@pytest.fixture
def rows() -> list[PromptRow]:
    """Three prompt rows."""
    return [
        PromptRow(prompt="a lighthouse at dusk", tags=["coast", "dusk"]),
        PromptRow(prompt="a fox in the snow", seed=7),
        PromptRow(prompt="a city street in rain", source_image="street.jpg"),
    ]


@pytest.fixture
def light_png() -> bytes:
    """32x32 image, white top half and black bottom half."""
    return half_split_png(255, 0)


@pytest.fixture
def dark_png() -> bytes:
    """Inverse of ``light_png``: every sampled hash bit differs."""
    return half_split_png(0, 255)


@pytest.fixture
def gray_png() -> bytes:
    """Uniform mid-gray image; its hash is zero."""
    return make_png([[128] * 32] * 32)


@pytest.fixture
def ref_images(temp_dir: Path) -> dict[str, Path]:
    """Reference files on disk: two distinct images and a duplicate."""
    refs = temp_dir / "refs"
    refs.mkdir()
    paths = {
        "light": refs / "light.png",
        "dark": refs / "dark.png",
        "light_copy": refs / "light_copy.png",
    }
    paths["light"].write_bytes(half_split_png(255, 0))
    paths["dark"].write_bytes(half_split_png(0, 255))
    paths["light_copy"].write_bytes(paths["light"].read_bytes())
    return paths


@pytest.fixture
def result_item():
    """Factory for batch result items carrying a data URL."""

    def _make(item_id: str, data: bytes | None = None, out_url: str | None = None):
        if out_url is None and data is not None:
            out_url = data_url(data)
        return BatchResultItem(id=item_id, prompt=f"prompt {item_id}", out_url=out_url)

    return _make
