"""Exception types raised by taskgate."""

from __future__ import annotations


class TaskgateError(Exception):
    """Base class for taskgate errors."""


class ConfigError(TaskgateError):
    """A setting could not be parsed."""


class NotFoundError(TaskgateError):
    """No task exists with the given id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class AlreadyDecidedError(TaskgateError):
    """The task was already approved or rejected (or never needed a decision)."""

    def __init__(self, task_id: str, state: str) -> None:
        super().__init__(f"Task {task_id} is already {state}")
        self.task_id = task_id
        self.state = state


class UnknownHandlerError(TaskgateError):
    """No handler is registered under the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"no handler registered for {name}")
        self.name = name


class HandlerRegistrationError(TaskgateError):
    """A handler could not be registered."""
