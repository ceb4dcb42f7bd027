"""Executor collaborators — what actually runs when a task is dispatched."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from taskscheduler.scheduler.errors import ExecutionFailure
from taskscheduler.scheduler.models import Outcome

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from taskscheduler.scheduler.models import Task

logger = logging.getLogger(__name__)


@runtime_checkable
class Executor(Protocol):
    """Runs one attempt of a task.

    Returning ``Outcome.SUCCESS`` or None means success; returning
    ``Outcome.FAILURE`` or raising means failure; raising ExecutionTimeout
    means timeout.  Cancellation arrives as ``asyncio.CancelledError`` at the
    executor's next await, which it should let propagate after cleaning up.
    """

    async def run(self, task: Task) -> Outcome | None: ...


class ActionExecutor:
    """Executes tasks by dispatching on ``task.action["type"]``.

    Handlers are async callables taking the task, registered per action type.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[[Task], Awaitable[Outcome | None]]] = {}

    def register(
        self,
        action_type: str,
        handler: Callable[[Task], Awaitable[Outcome | None]],
    ) -> None:
        """Register a handler. Raises ValueError on duplicate action type."""
        if action_type in self._handlers:
            msg = f"Handler for action '{action_type}' is already registered"
            raise ValueError(msg)
        self._handlers[action_type] = handler

    def action_types(self) -> list[str]:
        return list(self._handlers.keys())

    async def run(self, task: Task) -> Outcome | None:
        action_type = task.action_type
        handler = self._handlers.get(action_type)
        if handler is None:
            msg = f"Unknown action type: {action_type or '<none>'}"
            raise ExecutionFailure(msg)
        logger.info("Executing task: '%s' (%s) action=%s", task.title, task.id, action_type)
        return await handler(task)


async def log_action(task: Task) -> Outcome:
    """Built-in ``log`` action: write the task's message to the log."""
    message = task.action.get("message", "")
    if not message:
        logger.warning("log action has empty message: %s", task.id)
    logger.info("[%s] %s", task.title, message)
    return Outcome.SUCCESS
