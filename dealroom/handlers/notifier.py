"""Outbound notification sinks.

DatabaseSink keeps an inbox row per event so agents can read what was sent
to them. HttpSink POSTs each event as JSON to a configured webhook URL.
Both are registered on the EventBus with add_sink(); a failing sink is
isolated by the bus and never affects the transition that produced the event.
"""

from __future__ import annotations

import logging

import httpx

from dealroom.config import Settings
from dealroom.events import Event
from dealroom.storage.database import Database
from dealroom.storage.models import Notification

logger = logging.getLogger(__name__)


class DatabaseSink:
    """Persists every event as a Notification row."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def __call__(self, event: Event) -> None:
        async with self._db.session() as session:
            session.add(
                Notification(
                    agent_id=event.agent_id,
                    type=event.type,
                    match_id=event.match_id,
                    from_agent_id=event.from_agent_id,
                    summary=event.summary,
                    created_at=event.timestamp,
                )
            )
            await session.commit()
        logger.debug("Stored %s notification for %s", event.type, event.agent_id)


class HttpSink:
    """POSTs events to notify_webhook_url."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._url = settings.notify_webhook_url
        self._timeout = settings.notify_timeout
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._timeout)

    async def __call__(self, event: Event) -> None:
        try:
            response = await self._http.post(self._url, json=event.to_dict(), timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.warning("Webhook delivery of %s to %s failed: %s", event.type, event.agent_id, e)
            return
        if response.status_code >= 400:
            logger.warning(
                "Webhook rejected %s for %s: %d", event.type, event.agent_id, response.status_code
            )

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()
