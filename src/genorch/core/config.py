"""Configuration management for the genorch job orchestrator.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the NN_ prefix,
allowing operators to tune budgets, retry behaviour and provider selection
without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (NN_* prefix)
2. .env file in the project root
3. Default values defined in GenOrchConfig

The standard cloud variables ``GOOGLE_CLOUD_PROJECT`` and
``GOOGLE_CLOUD_LOCATION`` are also accepted without the prefix.

Example .env file:
    NN_PROVIDER=vertex
    NN_OUT_DIR=artifacts
    NN_MAX_CONCURRENCY=4
    NN_PRICE_PER_IMAGE_USD=0.039
    GOOGLE_CLOUD_PROJECT=my-project

Global Configuration Instance
------------------------------
A global `config` instance is created at module import time for entry points
(the FastAPI app and its ``main()``).  Core components never read it
directly: they receive a ``GenOrchConfig`` through their constructors, so
tests and embedded callers can run several differently configured stacks in
one process.

Directory Management
--------------------
The configuration creates ``out_dir`` on initialization.  Job manifests,
renders, the operations ledger and the publisher probe cache all live below
it (see the derived ``*_dir``/``*_path`` properties).

Provider Resolution
-------------------
``provider`` is ``"vertex"`` only when ``NN_PROVIDER`` is exactly ``vertex``
(case-insensitive).  Any other value, including typos, resolves to the batch
provider, which is always safe to submit to.
"""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import PreflightBudgets

ProviderName = Literal["batch", "vertex"]


class GenOrchConfig(BaseSettings):
    """Main configuration for the generation orchestrator.

    Attributes
    ----------
    Provider Settings:
        provider : Literal["batch", "vertex"]
            Default provider when a job does not override it
        batch_relay_url : str
            Base URL of the batch relay service (keeps API keys server-side)
        google_cloud_project : str | None
            Cloud project for the synchronous provider; required for vertex
        google_cloud_location : str
            Cloud region for the synchronous provider
        google_access_token : SecretStr | None
            Bearer token for the synchronous provider; when unset the token
            is obtained from ``gcloud auth print-access-token``
        vertex_model : str
            Image model used by the synchronous provider
        primary_model : str
            Model whose publisher-health entry gates the synchronous provider

    Generation Settings:
        price_per_image_usd : float | None
            Price used for dry-run cost estimates (no estimate when unset)
        seconds_per_image : float
            Average latency used for dry-run time estimates
        max_concurrency : int
            Concurrency cap for the synchronous render loop (hard ceiling 4)

    Retry Settings:
        retry_max_attempts, retry_base_delay_ms, retry_max_delay_ms

    Preflight Budgets:
        job_max_bytes, item_max_bytes, max_refs_per_item, max_images_per_job,
        preflight_compress, preflight_split

    Style Guard:
        style_guard_enabled, style_guard_hamming_max, style_guard_retries,
        style_guard_retry_jitter_ms

    Polling:
        poll_base_delay_ms, poll_factor, poll_max_delay_ms, poll_max_attempts

    Health Probing:
        reachability_ttl_s, probe_timeout_s, generate_timeout_s,
        probe_cache_stale_hours

    Paths:
        out_dir : Path
            Root directory for manifests, renders, ledger and probe cache

    API Settings:
        server_host, server_port

    Notes
    -----
    - ``out_dir`` is created automatically if it doesn't exist
    - Configuration is immutable after initialization by convention
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="NN_",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Provider selection
    provider: ProviderName = Field(
        default="batch",
        description="Default provider: 'batch' unless explicitly 'vertex'",
    )
    batch_relay_url: str = Field(
        default="http://127.0.0.1:8787",
        description="Base URL of the batch relay service",
    )
    google_cloud_project: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "google_cloud_project", "NN_GOOGLE_CLOUD_PROJECT", "GOOGLE_CLOUD_PROJECT"
        ),
        description="Cloud project required by the synchronous provider",
    )
    google_cloud_location: str = Field(
        default="us-central1",
        validation_alias=AliasChoices(
            "google_cloud_location", "NN_GOOGLE_CLOUD_LOCATION", "GOOGLE_CLOUD_LOCATION"
        ),
        description="Cloud region for the synchronous provider",
    )
    google_access_token: SecretStr | None = Field(
        default=None,
        description="Bearer token for the synchronous provider (else gcloud is used)",
    )
    vertex_model: str = Field(
        default="gemini-2.5-flash-image-preview",
        description="Image model used by the synchronous provider",
    )
    primary_model: str = Field(
        default="gemini-1.5-flash",
        description="Model checked in the publisher health cache before using vertex",
    )

    # Generation
    price_per_image_usd: float | None = Field(
        default=None,
        ge=0.0,
        description="Per-image price for dry-run cost estimates",
    )
    seconds_per_image: float = Field(default=3.0, gt=0.0)
    max_concurrency: int = Field(
        default=4,
        ge=1,
        le=10,
        description="Sync render concurrency cap (never above 4 in flight)",
    )

    # Retry policy
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay_ms: int = Field(default=1000, ge=0)
    retry_max_delay_ms: int = Field(default=30000, ge=0)

    # Preflight budgets
    job_max_bytes: int = Field(default=200 * 1024 * 1024, ge=1)
    item_max_bytes: int = Field(default=8 * 1024 * 1024, ge=1)
    max_refs_per_item: int = Field(default=8, ge=1)
    max_images_per_job: int = Field(default=2000, ge=1)
    preflight_compress: bool = Field(default=True)
    preflight_split: bool = Field(default=True)

    # Style guard
    style_guard_enabled: bool = Field(default=True)
    style_guard_hamming_max: int = Field(
        default=15,
        ge=0,
        le=64,
        description="Hamming distance at or below which output counts as a copy",
    )
    style_guard_retries: int = Field(default=2, ge=0, le=10)
    style_guard_retry_jitter_ms: int = Field(default=2000, ge=0)

    # Polling
    poll_base_delay_ms: int = Field(default=2000, ge=0)
    poll_factor: float = Field(default=1.5, ge=1.0)
    poll_max_delay_ms: int = Field(default=30000, ge=0)
    poll_max_attempts: int = Field(default=1000, ge=1)

    # Health probing
    reachability_ttl_s: float = Field(default=300.0, ge=0.0)
    probe_timeout_s: float = Field(default=5.0, gt=0.0)
    generate_timeout_s: float = Field(default=60.0, gt=0.0)
    probe_cache_stale_hours: float = Field(default=24.0, gt=0.0)

    # Paths
    out_dir: Path = Field(
        default=Path("artifacts"),
        description="Root directory for manifests, renders, ledger and probe cache",
    )

    # API server
    server_host: str = Field(default="127.0.0.1")
    server_port: int = Field(default=8788, ge=1024, le=65535)

    def __init__(self, **kwargs):
        """Initialize configuration and create the output directory.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)
        self.out_dir.mkdir(parents=True, exist_ok=True)

    @field_validator("provider", mode="before")
    @classmethod
    def _resolve_provider(cls, value: object) -> str:
        # Anything other than an explicit "vertex" means batch.
        if isinstance(value, str) and value.strip().lower() == "vertex":
            return "vertex"
        return "batch"

    @property
    def jobs_dir(self) -> Path:
        """Directory holding one ``{jobId}.json`` manifest per batch job."""
        return self.out_dir / "jobs"

    @property
    def renders_dir(self) -> Path:
        """Directory receiving images from the synchronous render path."""
        return self.out_dir / "renders"

    @property
    def ledger_path(self) -> Path:
        """Append-only JSON-lines operations ledger."""
        return self.out_dir / "manifest.jsonl"

    @property
    def probe_cache_path(self) -> Path:
        """Publisher health snapshot written by the probe sweep."""
        return self.out_dir / "probe" / "publishers.json"

    def budgets(
        self, *, compress: bool | None = None, split: bool | None = None
    ) -> PreflightBudgets:
        """Build preflight budgets, optionally overriding the toggles per job.

        Args:
            compress: Override for ``preflight_compress``
            split: Override for ``preflight_split``

        Returns:
            PreflightBudgets for one submission
        """
        return PreflightBudgets(
            job_max_bytes=self.job_max_bytes,
            item_max_bytes=self.item_max_bytes,
            max_refs_per_item=self.max_refs_per_item,
            max_images_per_job=self.max_images_per_job,
            compress=self.preflight_compress if compress is None else compress,
            split=self.preflight_split if split is None else split,
        )


# Global configuration instance for entry points.
config = GenOrchConfig()
