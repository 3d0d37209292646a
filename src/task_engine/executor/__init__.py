"""Action executor implementations."""

from task_engine.executor.base import (
    ActionExecutionError,
    ActionExecutor,
    ActionRequest,
    ActionResult,
    ActionSession,
)
from task_engine.executor.http_executor import HttpActionExecutor

__all__ = [
    "ActionExecutionError",
    "ActionExecutor",
    "ActionRequest",
    "ActionResult",
    "ActionSession",
    "HttpActionExecutor",
]
