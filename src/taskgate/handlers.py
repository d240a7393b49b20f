"""Handler registry: maps handler names to the callables that do the work."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Iterator

from taskgate.errors import HandlerRegistrationError, UnknownHandlerError
from taskgate.models import Task

logger = logging.getLogger(__name__)

# Returns Success | Failure, or an awaitable of one
Handler = Callable[[Task], Any]


class HandlerRegistry:
    """
    Static name -> handler mapping, filled at startup.

    A handler takes the :class:`Task` and returns :class:`Success` or
    :class:`Failure`. It may be sync or async. Handlers should return
    ``Failure`` for expected business failures and only raise for
    unexpected ones; the dispatcher treats both as a failed attempt.

    Example:
        registry = HandlerRegistry()

        @registry.handler("newsletter")
        async def send_newsletter(task):
            url = await publish(task.metadata["draft_id"])
            return Success(deliverable_url=url)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._frozen = False

    def register(self, name: str, func: Handler, *, replace: bool = False) -> None:
        """
        Register ``func`` under ``name``.

        Raises:
            HandlerRegistrationError: If the registry is frozen, the name is
                empty, ``func`` is not callable, or the name is taken and
                ``replace`` is False.
        """
        if self._frozen:
            raise HandlerRegistrationError(f"Registry is frozen; cannot register {name!r}")
        if not name or not name.strip():
            raise HandlerRegistrationError("Handler name must not be empty")
        if not callable(func):
            raise HandlerRegistrationError(f"Handler {name!r} is not callable")
        if name in self._handlers and not replace:
            raise HandlerRegistrationError(f"Handler already registered: {name}")

        self._handlers[name] = func
        logger.debug("Registered handler %s", name)

    def handler(self, name: str, *, replace: bool = False):
        """Decorator form of :meth:`register`."""
        def decorator(func):
            self.register(name, func, replace=replace)
            return func
        return decorator

    def resolve(self, name: str) -> Handler:
        """
        Look up a handler.

        Raises:
            UnknownHandlerError: If nothing is registered under ``name``.
        """
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownHandlerError(name) from None

    def freeze(self) -> None:
        """Refuse further registrations (called once dispatching starts)."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._handlers)


async def invoke(handler: Handler, task: Task) -> Any:
    """
    Call a sync or async handler and return its raw result.

    Sync handlers run in a worker thread so a deadline around this call
    can fire while they block.
    """
    if inspect.iscoroutinefunction(handler):
        return await handler(task)
    result = await asyncio.to_thread(handler, task)
    if inspect.isawaitable(result):
        return await result
    return result
