# model/eventlog/__init__.py
"""
Log of payment-provider event ids already absorbed by the webhook.

A fast-path short-circuit for duplicate deliveries only; the authoritative
idempotency guard is the order status inside the settlement transaction.
Ids are recorded after settlement committed (or no-op'd), never before.
"""
from typing import Optional
import redis.asyncio as redis

from ... import config
from ...infra.sql import GatedAsyncSession

BACKEND = config.EVENTLOG_BACKEND  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import EventLog as _EventLog
else:
    from ._sql import EventLog as _EventLog


# Factory keeps server.py simple and constructor-agnostic:
def new_eventlog(*, db: Optional[GatedAsyncSession] = None,
                 r: Optional[redis.Redis] = None,
                 ttl_seconds: int = config.EVENTLOG_TTL_SECONDS):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("EventLog(redis) requires r=redis.Redis")
        return _EventLog(r=r, ttl_seconds=ttl_seconds)
    else:
        if db is None:
            raise RuntimeError("EventLog(sql) requires db=GatedAsyncSession")
        return _EventLog(db=db)


EventLog = _EventLog
__all__ = ["EventLog", "new_eventlog", "BACKEND"]
