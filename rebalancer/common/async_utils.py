from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    **fields: Any,
) -> T | None:
    """Run a best-effort side action; failures are logged and turned into ``None``."""
    try:
        outcome = action()
        if inspect.isawaitable(outcome):
            return await outcome
        return outcome
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            error_type=type(error).__name__,
            **fields,
        )
        return None


async def close_all(
    closers: Iterable[tuple[str, Callable[[], Awaitable[Any]]]],
    *,
    logger: logging.Logger,
) -> None:
    """Close every resource in order; one failing close never skips the rest."""
    for component, close in closers:
        await guarded_call(
            close,
            logger=logger,
            event="resource_close_failed",
            message=f"Failed to close {component}",
            component=component,
        )
