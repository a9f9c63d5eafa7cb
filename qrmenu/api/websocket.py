from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Depends
from typing import Any, Dict
import json
import logging
from qrmenu.utils.broadcast import Broadcaster, ROLE_RESTAURANT, ROLE_CUSTOMER, get_broadcaster

logger = logging.getLogger(__name__)

router = APIRouter()

def _join(websocket: WebSocket, broadcaster: Broadcaster, message: Dict[str, Any]) -> Dict[str, Any]:
    kind = message.get("type")
    if kind == "join-restaurant":
        restaurant_id = message.get("restaurantId")
        if not restaurant_id:
            return {"type": "error", "message": "restaurantId is required"}
        broadcaster.register(websocket, ROLE_RESTAURANT, restaurant_id=restaurant_id)
        return {"type": "joined", "role": ROLE_RESTAURANT, "scope": {"restaurantId": restaurant_id}}

    customer_id = message.get("customerId")
    if not customer_id:
        return {"type": "error", "message": "customerId is required"}
    restaurant_id = message.get("restaurantId")
    broadcaster.register(websocket, ROLE_CUSTOMER, restaurant_id=restaurant_id, customer_id=customer_id)
    return {
        "type": "joined",
        "role": ROLE_CUSTOMER,
        "scope": {"customerId": customer_id, "restaurantId": restaurant_id},
    }

def handle_message(websocket: WebSocket, broadcaster: Broadcaster, raw: str) -> Dict[str, Any]:
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        return {"type": "error", "message": "Messages must be JSON"}
    if not isinstance(message, dict):
        return {"type": "error", "message": "Messages must be JSON objects"}

    kind = message.get("type")
    if kind in ("join-restaurant", "join-customer"):
        return _join(websocket, broadcaster, message)
    if kind == "ping":
        return {"type": "pong"}
    return {"type": "error", "message": f"Unknown message type '{kind}'"}

@router.websocket("/ws")
async def order_updates(websocket: WebSocket, broadcaster: Broadcaster = Depends(get_broadcaster)):
    """Live order events for boards and the customer tracking page"""
    await websocket.accept()
    try:
        while True:
            raw = await websocket.receive_text()
            await websocket.send_json(handle_message(websocket, broadcaster, raw))
    except WebSocketDisconnect:
        logger.debug("WebSocket disconnected")
    finally:
        broadcaster.unregister(websocket)
