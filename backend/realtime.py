# realtime.py — WebSocket connection registry shared by routers and dispatchers
import logging
from typing import Dict, Optional

from fastapi import WebSocket

logger = logging.getLogger("tagflow.ws")


class ConnectionManager:
    """Manages WebSocket connections per company"""

    def __init__(self):
        self._connections: Dict[str, Dict[str, WebSocket]] = {}  # company_id -> {user_id -> ws}

    async def connect(self, websocket: WebSocket, user_id: str, company_id: str):
        await websocket.accept()
        self._connections.setdefault(company_id, {})[user_id] = websocket
        logger.info(f"WS connected: user={user_id[:8]} company={company_id[:8]}")

    def disconnect(self, user_id: str, company_id: str):
        if company_id in self._connections:
            self._connections[company_id].pop(user_id, None)
            if not self._connections[company_id]:
                del self._connections[company_id]
        logger.info(f"WS disconnected: user={user_id[:8]}")

    def is_connected(self, user_id: str, company_id: str) -> bool:
        return user_id in self._connections.get(company_id, {})

    async def send_to_user(self, user_id: str, company_id: Optional[str], message: dict) -> bool:
        """Push to one session. Returns False when the user is offline or the send failed."""
        targets = (
            [company_id] if company_id
            else [cid for cid, conns in self._connections.items() if user_id in conns]
        )
        delivered = False
        for cid in targets:
            ws = self._connections.get(cid, {}).get(user_id)
            if ws is None:
                continue
            try:
                await ws.send_json(message)
                delivered = True
            except Exception as e:
                logger.warning(f"WS send failed for user={user_id[:8]}: {e}")
                self.disconnect(user_id, cid)
        return delivered

    def get_online_users(self, company_id: str) -> list:
        return list(self._connections.get(company_id, {}).keys())

    def get_stats(self) -> dict:
        total = sum(len(conns) for conns in self._connections.values())
        return {
            "total_connections": total,
            "companies": len(self._connections),
        }


# Global connection manager
manager = ConnectionManager()
