"""Optional per-reference settlement lock backed by Redis.

The ledger primary key already rejects duplicate settlements; the lock only
keeps concurrent passes for the same `tx_ref` from all calling the gateway and
racing to the insert.
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import LockError

from storepay.common.config import settings
from storepay.common.errors import SettlementBusy
from storepay.common.logging import logger


class SettlementLock:
    """Serialize settlement passes per `tx_ref` when enabled."""

    def __init__(
        self,
        client: aioredis.Redis | None = None,
        enabled: bool | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.enabled = settings.settlement_lock_enabled if enabled is None else enabled
        self.timeout_seconds = timeout_seconds or settings.settlement_lock_timeout_seconds
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.Redis.from_url(settings.redis_url, decode_responses=True)
        return self._client

    @asynccontextmanager
    async def hold(self, tx_ref: str):
        """Hold `settlement:<tx_ref>` for the duration of the block."""

        if not self.enabled:
            yield
            return

        lock = self.client.lock(
            f"settlement:{tx_ref}",
            timeout=self.timeout_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise SettlementBusy(f"settlement lock busy for tx_ref={tx_ref}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as exc:
                # Lock expired while the pass was still running.
                logger.warning("settlement lock release failed tx_ref=%s error=%s", tx_ref, exc)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
