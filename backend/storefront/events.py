import os
import json
import logging
from typing import Any, Dict, List

from fastapi import WebSocket

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"

logger = logging.getLogger("storefront")
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(_handler)
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))


def log_event(component: str, event: str, level: int = logging.INFO, **payload: Any) -> None:
    """Write one JSON line for a domain event (ledger postings, order transitions, refunds)."""
    try:
        line = json.dumps({"component": component, "event": event, **payload}, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        line = str({"component": component, "event": event, **payload})
    logger.log(level, line)


# ---------- WebSocket Manager ----------
class ConnectionManager:
    def __init__(self):
        self.active: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active:
            self.active.remove(websocket)

    async def broadcast(self, message: Dict[str, Any]):
        for ws in list(self.active):
            try:
                await ws.send_text(json.dumps(message, default=str))
            except Exception:
                # Dead sockets are dropped; the sender never fails because of a listener
                self.disconnect(ws)


manager = ConnectionManager()
