"""Owner-scoped refinement lease.

Only one refinement session may run per owner.  The lease is a Redis key
``memrefine:lock:refine:{owner}`` set with ``SET NX EX`` and holding a
random token, so only the holder can release it (check-and-delete in Lua).
The TTL frees the owner if the holding process dies.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid

from redis.asyncio import Redis  # type: ignore[import-untyped]

from memrefine.config import LockConfig
from memrefine.errors import RefinementInProgressError

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class OwnerLock:
    """Async context manager holding the refinement lease for one owner.

    Usage::

        async with OwnerLock(redis, "agent-7"):
            ...  # exclusive refinement of agent-7
    """

    def __init__(
        self,
        redis: Redis,
        owner_id: str,
        *,
        config: LockConfig | None = None,
        key_prefix: str = "memrefine",
    ) -> None:
        self._redis = redis
        self.owner_id = owner_id
        self.config = config or LockConfig()
        self.key = f"{key_prefix}:lock:refine:{owner_id}"
        self.token = uuid.uuid4().hex
        self._acquired = False

    @property
    def acquired(self) -> bool:
        return self._acquired

    async def acquire(self) -> None:
        """Take the lease, waiting up to ``config.wait_seconds``.

        Raises ``RefinementInProgressError`` if another session holds it.
        """
        deadline = time.monotonic() + self.config.wait_seconds
        while True:
            if await self._redis.set(
                self.key, self.token, ex=self.config.ttl_seconds, nx=True
            ):
                self._acquired = True
                logger.debug("Refinement lease acquired for owner %s", self.owner_id)
                return
            if time.monotonic() >= deadline:
                raise RefinementInProgressError(
                    f"A refinement session is already running for owner {self.owner_id}"
                )
            await asyncio.sleep(self.config.retry_delay)

    async def release(self) -> bool:
        if not self._acquired:
            return False
        self._acquired = False
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token)
        if not released:
            logger.warning(
                "Refinement lease for owner %s expired before release", self.owner_id
            )
        return bool(released)

    async def __aenter__(self) -> OwnerLock:
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
