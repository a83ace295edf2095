"""Workflow orchestration for generation jobs.

- **BatchJobManager**: submit, poll, fetch, cancel and resume for batch jobs
  with durable manifests.
- **GenerationOrchestrator**: preflight, provider selection and either the
  batch path or the style-guarded sync render loop.
"""

from genorch.workflows.batch_jobs import BatchJobManager
from genorch.workflows.orchestrator import GenerateRequest, GenerationOrchestrator

__all__ = ["BatchJobManager", "GenerateRequest", "GenerationOrchestrator"]
