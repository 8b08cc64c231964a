"""
In-memory processor token cache with single-flight refresh.

Tokens are keyed by (provider, company_code) and never persisted. A usable
token is returned straight from the cache. When the token is missing or
near expiry, the first caller starts one fetch task for the key and every
concurrent caller awaits that same task, sharing its token or its error.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from gateway.models.charge import ProviderToken
from gateway.models.enums import PaymentMethod

logger = logging.getLogger("payment_gateway.token_cache")

CacheKey = tuple[PaymentMethod, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCache:
    def __init__(
        self,
        skew: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._skew = skew
        self._clock = clock
        self._tokens: dict[CacheKey, ProviderToken] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}

    def peek(self, key: CacheKey) -> Optional[ProviderToken]:
        """Return the cached token if still usable."""
        token = self._tokens.get(key)
        if token is not None and token.is_usable(self._clock(), self._skew):
            return token
        return None

    async def get_or_fetch(
        self,
        key: CacheKey,
        fetch: Callable[[], Awaitable[ProviderToken]],
    ) -> ProviderToken:
        """
        Return a usable token for key, calling fetch at most once per refresh.

        Callers that arrive while a fetch is running await it instead of
        starting their own. A failed fetch raises the same error in every
        waiter and is not cached; the next caller after it starts a new one.
        Cancelling one waiter does not cancel the shared fetch.
        """
        self._evict_expired()
        token = self.peek(key)
        if token is not None:
            return token

        task = self._inflight.get(key)
        if task is None:
            logger.info("Fetching new %s token for company %s", key[0].value, key[1])
            task = asyncio.ensure_future(self._fetch(key, fetch))
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def _fetch(self, key: CacheKey, fetch: Callable[[], Awaitable[ProviderToken]]) -> ProviderToken:
        try:
            token = await fetch()
        except Exception as e:
            logger.warning("Fetching %s token for company %s failed: %s", key[0].value, key[1], e)
            raise
        finally:
            self._inflight.pop(key, None)
        self._tokens[key] = token
        return token

    def invalidate(self, key: CacheKey) -> None:
        if self._tokens.pop(key, None) is not None:
            logger.info("Invalidated %s token for company %s", key[0].value, key[1])

    def _evict_expired(self) -> None:
        now = self._clock()
        stale = [k for k, t in self._tokens.items() if not t.is_usable(now, self._skew)]
        for key in stale:
            del self._tokens[key]

    def __len__(self) -> int:
        return len(self._tokens)
