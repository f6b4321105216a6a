import asyncio
import functools
import logging
from typing import Any, Callable, Tuple, Type


logger = logging.getLogger(__name__)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
):
    """Simple async retry decorator with exponential backoff."""

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    attempt += 1
                    if attempt > max_retries:
                        raise
                    delay = base_delay * (2 ** (attempt - 1))
                    logger.debug(
                        f"{func.__name__} failed ({e}), retry {attempt}/{max_retries} in {delay}s"
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


async def call_with_retry(
    func: Callable, *args, max_retries: int = 3, base_delay: float = 0.5, **kwargs
) -> Any:
    """Run an async callable under retry_with_backoff without decorating it."""
    wrapped = retry_with_backoff(max_retries=max_retries, base_delay=base_delay)(func)
    return await wrapped(*args, **kwargs)
