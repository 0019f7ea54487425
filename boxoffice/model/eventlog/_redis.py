from __future__ import annotations
import redis.asyncio as redis


# ---- keys
def k_evt(evt_id: str) -> str: return f"whevt:{evt_id}"


class EventLog:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def seen(self, evt_id: str | None) -> bool:
        if not evt_id:
            return False
        return bool(await self.r.exists(k_evt(evt_id)))

    async def mark(self, evt_id: str | None) -> bool:
        """True if this call recorded the id, False if it was already there."""
        if not evt_id:
            return False
        ok = await self.r.set(k_evt(evt_id), "1", nx=True, ex=self.ttl)
        return bool(ok)
