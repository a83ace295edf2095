"""Core functionality for generation job orchestration.

This module provides the building blocks the workflows are assembled from:

- **GenOrchConfig / config**: configuration using Pydantic Settings
- **Problem / ProblemError**: RFC 7807 error objects
- **preflight**: reference deduplication and payload budgeting
- **StyleGuard**: perceptual-hash copy detection
- **RetryPolicy / with_retry**: backoff with full jitter
- **run_bounded / CancellationToken**: bounded cooperative concurrency
- **JobStore / OperationsLedger**: durable manifests and the audit ledger
- **load_reference_pack / resolve_pack**: reference packs from files or directories

Architecture Overview
---------------------
1. **Configuration Layer** (config.py):
   - Environment-based configuration, ``NN_`` prefix
   - Output directory created on initialisation

2. **Data Layer** (models.py, problems.py, storage.py):
   - camelCase pydantic models for every persisted document
   - Atomic writes and append-only JSON lines

3. **Policy Layer** (preflight.py, style_guard.py, retry.py, concurrency.py):
   - Pure decisions and bounded execution, no provider knowledge

4. **Support Utilities**:
   - refs.py: reference pack and prompt loading (JSON/YAML/JSONL)
   - idempotency.py: idempotency keys and submission fingerprints

See Also
--------
- genorch.providers: remote providers and provider selection
- genorch.workflows: batch job state machine and the orchestrator
"""

from genorch.core.concurrency import CancellationToken, OperationCancelled, run_bounded
from genorch.core.config import GenOrchConfig, config
from genorch.core.preflight import preflight
from genorch.core.problems import Problem, ProblemError, RemoteCallError
from genorch.core.refs import load_prompt_rows, load_reference_pack, pack_from_style_dir, resolve_pack
from genorch.core.retry import RetryPolicy, with_retry
from genorch.core.storage import JobStore, OperationsLedger
from genorch.core.style_guard import StyleGuard

__all__ = [
    "CancellationToken",
    "GenOrchConfig",
    "JobStore",
    "OperationCancelled",
    "OperationsLedger",
    "Problem",
    "ProblemError",
    "RemoteCallError",
    "RetryPolicy",
    "StyleGuard",
    "config",
    "load_prompt_rows",
    "load_reference_pack",
    "pack_from_style_dir",
    "preflight",
    "resolve_pack",
    "run_bounded",
    "with_retry",
]
