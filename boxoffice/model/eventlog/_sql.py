from __future__ import annotations

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from ...helpers import now_ts
from ...infra.sql import GatedAsyncSession
from ..db import WebhookEventSeen


class EventLog:
    def __init__(self, db: GatedAsyncSession) -> None:
        self.db = db

    async def seen(self, evt_id: str | None) -> bool:
        if not evt_id:
            return False
        async with self.db.gated():
            async with self.db.session.begin():
                row = (await self.db.session.execute(
                    select(WebhookEventSeen.event_id)
                    .where(WebhookEventSeen.event_id == evt_id)
                )).first()
        return row is not None

    async def mark(self, evt_id: str | None) -> bool:
        """True if this call recorded the id, False if it was already there."""
        if not evt_id:
            return False
        try:
            async with self.db.gated():
                async with self.db.session.begin():
                    await self.db.session.execute(
                        insert(WebhookEventSeen)
                        .values(event_id=evt_id, created_at=now_ts())
                    )
        except IntegrityError:
            # a concurrent delivery of the same event recorded it first
            return False
        return True
