"""genorch - AI image generation job orchestration."""

__version__ = "0.1.0"

from genorch.core.config import GenOrchConfig, config
from genorch.core.problems import Problem, ProblemError

__all__ = [
    "GenOrchConfig",
    "Problem",
    "ProblemError",
    "config",
]
