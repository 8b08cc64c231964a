"""
Exponential backoff retry logic for token acquisition and ERP reads.

Retries only errors classified as transient (NetworkError, RateLimitError,
GatewayTimeout), with exponential backoff and a bounded number of attempts.
Charge submission and ERP writes are never passed through here.
"""

import asyncio
import logging
from typing import Any, Callable

from gateway.engine.errors import GatewayError, RateLimitError

logger = logging.getLogger("payment_gateway.retry")

MAX_RETRIES = 3
BASE_DELAY = 1.0
MAX_DELAY = 30.0


async def with_retry(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    **kwargs: Any,
) -> Any:
    """
    Execute an async function with exponential backoff on retriable errors.

    Args:
        func: Async callable to execute.
        max_retries: Maximum number of retry attempts.
        base_delay: First sleep in seconds; doubles on each retry.

    Returns:
        The result of the function call.

    Raises:
        GatewayError: On a non-retriable failure or exhausted retries.
    """
    delay = base_delay

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except GatewayError as e:
            if not e.retriable or attempt >= max_retries:
                if e.retriable:
                    logger.error("Exhausted %d retries: %s", max_retries, e)
                raise

            sleep_for = min(delay, MAX_DELAY)
            if isinstance(e, RateLimitError) and e.retry_after:
                sleep_for = min(e.retry_after, MAX_DELAY)

            logger.warning(
                "Retriable error on attempt %d/%d: %s (sleeping %.1fs)",
                attempt + 1,
                max_retries + 1,
                e,
                sleep_for,
            )
            await asyncio.sleep(sleep_for)
            delay = min(delay * 2, MAX_DELAY)

    raise GatewayError("Unknown error after retries")
