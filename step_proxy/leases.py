"""Credential lease cache keyed by refresh credential.

A refresh credential is exchanged for a short lived access lease. Concurrent
requests for the same credential share one in-flight exchange, and a lease the
provider rejects is evicted so the next caller performs a fresh exchange.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, NamedTuple

logger = logging.getLogger(__name__)


class LeaseGrant(NamedTuple):
    """Raw values returned by one successful credential exchange."""

    device_id: str
    access_raw: str
    refresh_raw: str


@dataclass(frozen=True)
class Lease:
    device_id: str
    access_raw: str
    refresh_raw: str
    expires_at: float

    @property
    def token(self) -> str:
        return f"{self.access_raw}...{self.refresh_raw}"


Exchange = Callable[[str], Awaitable[LeaseGrant]]


class LeaseStore:
    """Cache leases per refresh key with single-flight refresh."""

    def __init__(
        self,
        exchange: Exchange,
        ttl: float = 900.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._ttl = ttl
        self._clock = clock
        self._leases: dict[str, Lease] = {}
        self._pending: dict[str, asyncio.Task[Lease]] = {}

    async def acquire(self, key: str) -> Lease:
        lease = self._leases.get(key)
        if lease is not None and self._clock() <= lease.expires_at:
            return lease

        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(key))
            self._pending[key] = task
            task.add_done_callback(lambda t, k=key: self._settled(k, t))
        # shield so one cancelled waiter does not cancel the shared exchange
        return await asyncio.shield(task)

    def _settled(self, key: str, task: asyncio.Task) -> None:
        self._pending.pop(key, None)
        # every waiter may have gone; mark the failure as retrieved
        if not task.cancelled():
            task.exception()

    def evict(self, key: str) -> None:
        if self._leases.pop(key, None) is not None:
            logger.info("Evicted cached lease for %s", _mask(key))

    async def _refresh(self, key: str) -> Lease:
        logger.info("Refreshing lease for %s", _mask(key))
        try:
            grant = await self._exchange(key)
        except Exception:
            self._leases.pop(key, None)
            raise
        lease = Lease(
            device_id=grant.device_id,
            access_raw=grant.access_raw,
            refresh_raw=grant.refresh_raw,
            expires_at=self._clock() + self._ttl,
        )
        self._leases[key] = lease
        logger.info("Lease refresh for %s succeeded", _mask(key))
        return lease


def _mask(key: str) -> str:
    if len(key) <= 8:
        return "***"
    return f"{key[:4]}***{key[-4:]}"
