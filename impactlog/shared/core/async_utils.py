import inspect
from collections.abc import Callable
from typing import Any


async def maybe_await(value: Any) -> Any:
    """Await `value` if it's awaitable, otherwise return it directly.

    Record stores and reference-data sources may be synchronous
    (in-memory) or asynchronous (database backed); callers treat them
    uniformly through this helper.
    """
    if inspect.isawaitable(value):
        return await value
    return value


async def maybe_call(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call `func` and await the result only when needed."""
    return await maybe_await(func(*args, **kwargs))
