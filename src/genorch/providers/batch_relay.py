"""HTTP client for the batch relay service.

The relay keeps provider API keys server-side and exposes a small JSON API:

====================================  =======================================
``POST /batch/submit``                ``{jobId, estCount}``
``GET  /batch/{jobId}``               ``{status, completed?, total?, errors?}``
``GET  /batch/{jobId}/results``       ``{results: [{id, prompt, outUrl?}], problems}``
``POST /batch/{jobId}/cancel``        ``{status: canceled | not_found}``
``GET  /healthz``                     ``{ok, timestamp, apiKeyConfigured}``
====================================  =======================================

Every response is validated into the payload models of
:mod:`genorch.providers.base`.  Non-2xx responses raise
:class:`~genorch.core.problems.RemoteCallError` with the HTTP status, so the
retry policy can tell client errors from transient ones.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from genorch.core.models import PromptRow
from genorch.core.problems import RemoteCallError
from genorch.core.style_guard import STYLE_ONLY_PREFIX

from .base import BatchProvider, BatchResults, BatchStatus, BatchSubmission, CancelResult

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)

DEFAULT_RELAY_URL = "http://127.0.0.1:8787"


def _row_body(row: PromptRow) -> dict[str, Any]:
    """Wire form of one row; unset optional fields are omitted, never null."""
    body: dict[str, Any] = {"prompt": f"{STYLE_ONLY_PREFIX}\n\n{row.prompt}"}
    if row.source_image is not None:
        body["sourceImage"] = row.source_image
    if row.seed is not None:
        body["seed"] = row.seed
    if row.tags:
        body["tags"] = list(row.tags)
    return body


class BatchRelayProvider(BatchProvider):
    """Batch provider backed by the relay service.

    Args:
        base_url: Relay base URL.
        client: Shared ``httpx.AsyncClient``; when omitted the provider owns
            one and closes it in :meth:`aclose`.
        timeout: Per-request timeout in seconds for an owned client.
    """

    name = "gemini-batch"
    description = "Gemini batch generation through the relay proxy"

    def __init__(
        self,
        base_url: str = DEFAULT_RELAY_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        logger.info("Initialized batch relay provider base_url=%s", self.base_url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload_type: type[P],
        body: dict[str, Any] | None = None,
    ) -> P:
        response = await self.client.request(method, f"{self.base_url}{path}", json=body)
        if response.status_code >= 400:
            logger.error(
                "Relay %s failed status=%d body=%s",
                operation,
                response.status_code,
                response.text[:500],
            )
            raise RemoteCallError(
                f"relay {operation} {response.status_code}: {response.text[:200]}",
                status=response.status_code,
                operation=operation,
            )
        try:
            return payload_type.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("Relay %s returned a malformed payload error=%s", operation, e)
            raise RemoteCallError(
                f"relay {operation} returned a malformed payload",
                status=502,
                operation=operation,
            ) from e

    async def submit(
        self,
        rows: Sequence[PromptRow],
        variants: int,
        style_refs: Sequence[str],
        idempotency_key: str | None = None,
    ) -> BatchSubmission:
        body: dict[str, Any] = {
            "rows": [_row_body(row) for row in rows],
            "variants": variants,
            "styleOnly": True,
            "styleRefs": list(style_refs),
        }
        # The relay schema is strict; the key stays local as the manifest promptsHash.
        logger.debug(
            "Submitting batch rows=%d variants=%d key=%s",
            len(rows),
            variants,
            (idempotency_key or "")[:12],
        )
        submission = await self._request("submit", "POST", "/batch/submit", BatchSubmission, body)
        logger.info(
            "Batch job submitted job_id=%s est_count=%d", submission.job_id, submission.est_count
        )
        return submission

    async def poll(self, job_id: str) -> BatchStatus:
        status = await self._request("poll", "GET", f"/batch/{quote(job_id, safe='')}", BatchStatus)
        logger.debug(
            "Poll result job_id=%s status=%s completed=%s total=%s",
            job_id,
            status.status,
            status.completed,
            status.total,
        )
        return status

    async def fetch(self, job_id: str) -> BatchResults:
        results = await self._request(
            "fetch", "GET", f"/batch/{quote(job_id, safe='')}/results", BatchResults
        )
        logger.info(
            "Batch results fetched job_id=%s results=%d problems=%d",
            job_id,
            len(results.results),
            len(results.problems),
        )
        return results

    async def cancel(self, job_id: str) -> CancelResult:
        result = await self._request(
            "cancel", "POST", f"/batch/{quote(job_id, safe='')}/cancel", CancelResult
        )
        logger.info("Batch cancel result job_id=%s status=%s", job_id, result.status)
        return result

    async def health_check(self) -> dict[str, Any]:
        response = await self.client.get(f"{self.base_url}/healthz")
        if response.status_code >= 400:
            raise RemoteCallError(
                f"relay health check failed {response.status_code}",
                status=response.status_code,
                operation="health",
            )
        return response.json()
