"""
Bounded polling. Every wait in the controller goes through wait_until so
that none of them can poll forever and all of them fail the same way.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, Union

from ..exceptions import WaitTimeoutError

Check = Callable[[], Union[Tuple[bool, Any], Awaitable[Tuple[bool, Any]]]]
Diagnose = Callable[[], Union[Any, Awaitable[Any]]]


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


async def wait_until(
    check: Check,
    *,
    description: str,
    interval: float,
    attempts: int,
    logger: logging.Logger,
    error_cls: Type[WaitTimeoutError] = WaitTimeoutError,
    diagnose: Optional[Diagnose] = None,
) -> Any:
    """
    Call `check` until it reports done, sleeping `interval` seconds between
    calls, at most `attempts` times.

    `check` returns `(done, observation)`. The observation of the successful
    call is returned. On timeout `diagnose` (if given) is called and its
    result becomes the error's `last_observation`; otherwise the last
    observation from `check` is used.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    observation = None
    for attempt in range(1, attempts + 1):
        done, observation = await _maybe_await(check())
        if done:
            if attempt > 1:
                logger.info(f"{description}: done after {attempt} attempts")
            return observation
        logger.debug(f"{description}: attempt {attempt}/{attempts} not done ({observation})")
        if attempt < attempts:
            await asyncio.sleep(interval)

    if diagnose is not None:
        observation = await _maybe_await(diagnose())
    logger.error(f"{description}: giving up after {attempts} attempts")
    raise error_cls(description, attempts, observation)
