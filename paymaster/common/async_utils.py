from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T]],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    default: T | None = None,
    **fields: Any,
) -> T | None:
    """Await ``action`` and log a warning instead of raising.

    Used where a failed side call (healthcheck, siteverify, cleanup) must not
    fail the request; cancellation always propagates.
    """
    try:
        return await action()
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level="warning",
            event=event,
            message=message,
            error=str(error),
            error_type=type(error).__name__,
            **fields,
        )
        return default
