"""Realtime inbox stream - pushes inbox events to a user's open WebSocket connections."""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionStore(ABC):
    """Where live connections are kept. Injected so that it can be swapped or scoped."""

    @abstractmethod
    async def add(self, user_id: str, websocket: WebSocket) -> None:
        """Register a live connection for a user."""

    @abstractmethod
    async def remove(self, user_id: str, websocket: WebSocket) -> None:
        """Forget a connection. Unknown connections are ignored."""

    @abstractmethod
    async def connections_for(self, user_id: str) -> List[WebSocket]:
        """Snapshot of the user's current connections."""

    @abstractmethod
    async def count(self) -> int:
        """Total number of live connections."""


class InMemoryConnectionStore(ConnectionStore):
    """Connections of this process, keyed by user."""

    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def add(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)

    async def remove(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            connections = self._connections.get(user_id)
            if connections is None:
                return
            connections.discard(websocket)
            if not connections:
                del self._connections[user_id]

    async def connections_for(self, user_id: str) -> List[WebSocket]:
        # Copy the set to avoid modification during iteration
        async with self._lock:
            return list(self._connections.get(user_id, ()))

    async def count(self) -> int:
        async with self._lock:
            return sum(len(c) for c in self._connections.values())


class InboxStreamManager:
    """Publishes inbox events to the connections of one user."""

    def __init__(self, store: Optional[ConnectionStore] = None):
        self.store = store or InMemoryConnectionStore()

    @asynccontextmanager
    async def session(self, user_id: str, websocket: WebSocket):
        """Accept a WebSocket and keep it registered for the lifetime of the block."""
        await websocket.accept()
        await self.store.add(user_id, websocket)
        logger.info(f"Inbox stream connected for user {user_id}")
        try:
            yield websocket
        finally:
            await self.store.remove(user_id, websocket)
            logger.info(f"Inbox stream disconnected for user {user_id}")

    async def publish(self, user_id: str, message: Dict[str, Any]) -> int:
        """Send a message to every connection of a user, dropping any that fail.

        Returns the number of connections that received it.
        """
        connections = await self.store.connections_for(user_id)
        if not connections:
            return 0

        message_json = json.dumps(message, default=str)
        delivered = 0
        for websocket in connections:
            try:
                await websocket.send_text(message_json)
                delivered += 1
            except Exception as e:
                logger.debug(f"Failed to send to WebSocket: {e}")
                await self.store.remove(user_id, websocket)
        return delivered

    async def notification_created(
        self,
        user_id: str,
        notification_id: int,
        title: str,
        body: str,
        type: str,
    ):
        await self.publish(user_id, {
            "type": "notification_created",
            "notification_id": notification_id,
            "title": title,
            "body": body,
            "notification_type": type,
            "created_at": datetime.utcnow().isoformat(),
        })

    async def unread_count(self, user_id: str, count: int):
        await self.publish(user_id, {
            "type": "unread_count",
            "count": count,
        })
