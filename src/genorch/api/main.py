"""genorch - FastAPI application.

A thin HTTP front end over the orchestrator.  Every failure is returned as
``application/problem+json`` with the Problem's status, so clients have a
single error contract.

Architecture
------------
- **Configuration** comes from :data:`genorch.core.config.config` (``NN_*``
  environment variables) unless :func:`create_app` is given another one.
- **State** is one :class:`~genorch.providers.context.ProviderContext`
  built in the lifespan and stored on ``app.state`` together with the
  orchestrator and the batch job manager.
- **Jobs** are persisted as manifest files, so the API is stateless across
  restarts.

Endpoints
---------
========  ==============================  ====================================
Method    Path                            Purpose
========  ==============================  ====================================
GET       ``/api/health``                 Version and default provider
POST      ``/api/preflight``              Budget check without submission
POST      ``/api/generate``               Dry run, batch submit or sync render
GET       ``/api/jobs/{id}``              Poll a batch job (``?watch=true``)
GET       ``/api/jobs/{id}/manifest``     Persisted job manifest
POST      ``/api/jobs/{id}/fetch``        Download finished results
POST      ``/api/jobs/{id}/cancel``       Cancel a batch job
POST      ``/api/jobs/{id}/resume``       Poll once, fetch if succeeded
========  ==============================  ====================================

Usage
-----
CLI (installed entry point)::

    genorch

Direct invocation::

    python -m genorch.api.main
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from genorch import __version__
from genorch.api.models import FetchRequest, PreflightRequest
from genorch.core.config import GenOrchConfig, config
from genorch.core.preflight import preflight
from genorch.core.problems import Problem, ProblemError, RemoteCallError, problem_from_exception
from genorch.core.refs import resolve_pack
from genorch.core.style_guard import read_reference_images
from genorch.providers.context import ProviderContext
from genorch.workflows.batch_jobs import BatchJobManager
from genorch.workflows.orchestrator import GenerateRequest, GenerationOrchestrator

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"


def problem_response(problem: Problem) -> JSONResponse:
    return JSONResponse(
        problem.to_json(), status_code=problem.status, media_type=PROBLEM_MEDIA_TYPE
    )


def create_app(
    app_config: GenOrchConfig | None = None, context: ProviderContext | None = None
) -> FastAPI:
    """Build the application.

    Args:
        app_config: Configuration (defaults to the global ``config``).
        context: Pre-built provider context.  When given, the caller owns
            it and the lifespan does not close it.

    Returns:
        The FastAPI application.
    """
    app_config = app_config or (context.config if context else config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # --- Startup -------------------------------------------------------
        owned = context is None
        ctx = context or ProviderContext(app_config)
        app.state.context = ctx
        app.state.jobs = BatchJobManager(ctx)
        app.state.orchestrator = GenerationOrchestrator(ctx, jobs=app.state.jobs)
        logger.info(
            "Provider context ready provider=%s out_dir=%s", app_config.provider, app_config.out_dir
        )

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        if owned:
            await ctx.aclose()
        logger.info("Provider context closed on shutdown.")

    app = FastAPI(
        title="genorch",
        description="Image generation job orchestration API.",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(ProblemError)
    async def _problem_error(request: Request, exc: ProblemError) -> JSONResponse:
        return problem_response(exc.problem)

    @app.exception_handler(RemoteCallError)
    async def _remote_error(request: Request, exc: RemoteCallError) -> JSONResponse:
        logger.error("Remote call failed path=%s error=%s", request.url.path, exc)
        return problem_response(exc.to_problem())

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error path=%s", request.url.path)
        return problem_response(problem_from_exception(exc, "Internal error"))

    @app.get("/api/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__, "provider": app_config.provider}

    @app.post("/api/preflight")
    async def run_preflight(body: PreflightRequest):
        """Check rows and references against the budgets.

        Returns:
            The PreflightResult, or the first Problem when rejected.

        Raises:
            ProblemError: 400 when the pack file or style directory cannot
                be loaded.
        """
        pack = await asyncio.to_thread(resolve_pack, body.pack, body.pack_path, body.style_dir)
        budgets = app_config.budgets(compress=body.compress, split=body.split)
        result = await preflight(body.rows, pack, budgets)
        if not result.ok:
            return problem_response(result.problems[0])
        return result.to_json()

    @app.post("/api/generate")
    async def generate(body: GenerateRequest, request: Request):
        """Run a generation request.

        Raises:
            ProblemError: Provider gating failures under ``noFallback``.
        """
        outcome = await request.app.state.orchestrator.generate(body)
        if outcome.status == "rejected":
            return problem_response(outcome.problems[0])
        return outcome.to_json()

    @app.get("/api/jobs/{job_id}")
    async def poll_job(job_id: str, request: Request, watch: bool = False) -> dict:
        snapshot = await request.app.state.jobs.poll(job_id, watch=watch)
        return snapshot.to_json()

    @app.get("/api/jobs/{job_id}/manifest")
    async def get_manifest(job_id: str, request: Request) -> dict:
        manifest = await request.app.state.context.job_store.load(job_id)
        if manifest is None:
            raise ProblemError.create(
                "Job not found", f"No manifest for job {job_id}", 404, type="jobs/not-found"
            )
        return manifest.to_json()

    @app.post("/api/jobs/{job_id}/fetch")
    async def fetch_job(job_id: str, request: Request, body: FetchRequest | None = None) -> dict:
        body = body or FetchRequest()
        out_dir = app_config.out_dir / body.out_dir if body.out_dir else None
        report = await request.app.state.jobs.fetch(
            job_id, out_dir, read_reference_images(body.style_refs) or None
        )
        return report.to_json()

    @app.post("/api/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, request: Request) -> dict:
        report = await request.app.state.jobs.cancel(job_id)
        return report.to_json()

    @app.post("/api/jobs/{job_id}/resume")
    async def resume_job(job_id: str, request: Request, body: FetchRequest | None = None) -> dict:
        body = body or FetchRequest()
        out_dir = app_config.out_dir / body.out_dir if body.out_dir else None
        report = await request.app.state.jobs.resume(
            job_id, out_dir, read_reference_images(body.style_refs) or None
        )
        return report.to_json()

    return app


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~genorch.core.config.config`
    (``NN_SERVER_HOST`` and ``NN_SERVER_PORT``).  Defaults to
    ``127.0.0.1:8788``.

    This function is registered as the ``genorch`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "genorch.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
