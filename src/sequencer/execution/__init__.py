"""Plan execution: per-entry executor and batch runner."""

from .executor import ExecutionResult, RetryPolicy, StepExecutor
from .runner import (
    EXIT_FATAL,
    EXIT_OK,
    EXIT_PARTIAL,
    PlanRunner,
    RunResult,
)

__all__ = [
    'EXIT_FATAL',
    'EXIT_OK',
    'EXIT_PARTIAL',
    'ExecutionResult',
    'PlanRunner',
    'RetryPolicy',
    'RunResult',
    'StepExecutor',
]
