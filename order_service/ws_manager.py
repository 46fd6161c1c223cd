# order_service/ws_manager.py
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import WebSocket

logger = logging.getLogger("order-service.ws")


class ConnectionManager:
    """
    Fan-out of order events to sockets listening on /ws/orders.

    Dashboards listen to everything; a tracking page or driver app can pass
    an order id and only receive that order's events.
    """

    def __init__(self):
        self.subscriptions: List[Tuple[WebSocket, Optional[str]]] = []

    @property
    def active_connections(self) -> List[WebSocket]:
        return [ws for ws, _ in self.subscriptions]

    async def connect(self, websocket: WebSocket, order_id: Optional[str] = None):
        await websocket.accept()
        self.subscriptions.append((websocket, order_id))
        scope = f"order {order_id}" if order_id else "all orders"
        logger.info(f"[WS] Client connected for {scope} ({len(self.subscriptions)} active)")

    def disconnect(self, websocket: WebSocket):
        self.subscriptions = [(ws, f) for ws, f in self.subscriptions if ws is not websocket]
        logger.info(f"[WS] Client disconnected ({len(self.subscriptions)} active)")

    @staticmethod
    def wants(order_filter: Optional[str], message: Dict[str, Any]) -> bool:
        if order_filter is None:
            return True
        data = message.get("data") or {}
        return data.get("order_id") == order_filter

    async def broadcast(self, message: Dict[str, Any]):
        dead = []
        for ws, order_filter in list(self.subscriptions):
            if not self.wants(order_filter, message):
                continue
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.warning(f"[WS] Dropping client after send failure: {e}")
                dead.append(ws)

        for ws in dead:
            self.disconnect(ws)


manager = ConnectionManager()
