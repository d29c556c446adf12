"""WebSocket endpoint with session-token authentication and room subscriptions."""

import json
import uuid

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from coinbook.auth.jwt import verify_token
from coinbook.ws.manager import manager, normalize_room

logger = structlog.get_logger()

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(default=""),
) -> None:
    """Single WebSocket endpoint.

    Protocol:
        Client -> Server:
            {"action": "subscribe", "room": "queue-monitor"}
            {"action": "unsubscribe", "room": "queue-monitor"}
            {"action": "ping"}

        Server -> Client:
            {"room": "user:42", "event": "achievement.earned", "data": {...}}
            {"type": "subscription:confirmed", "room": "room:queue-monitor"}
            {"type": "subscription:failed", "room": "room:queue-monitor", "reason": "..."}
            {"type": "pong"}
            {"type": "error", "message": "..."}
    """
    try:
        payload = verify_token(token)
        user_id = int(payload["sub"])
        role = str(payload.get("role", "regular"))
    except Exception as e:
        await websocket.close(code=4001, reason=f"Authentication failed: {e}")
        return

    conn_id = str(uuid.uuid4())
    await manager.connect(websocket, conn_id, user_id, role)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send(conn_id, {"type": "error", "message": "Invalid JSON"})
                continue

            action = msg.get("action")
            room = str(msg.get("room") or msg.get("channel") or "")

            if action == "subscribe":
                ok, reason = await manager.subscribe(conn_id, room)
                if ok:
                    await manager.send(conn_id, {"type": "subscription:confirmed", "room": normalize_room(room)})
                else:
                    logger.info("ws_subscription_refused", conn_id=conn_id, room=room, reason=reason)
                    await manager.send(conn_id, {
                        "type": "subscription:failed",
                        "room": normalize_room(room) if room else room,
                        "reason": reason,
                    })

            elif action == "unsubscribe":
                await manager.unsubscribe(conn_id, room)
                await manager.send(conn_id, {"type": "unsubscribed", "room": normalize_room(room)})

            elif action == "ping":
                await manager.send(conn_id, {"type": "pong"})

            else:
                await manager.send(conn_id, {"type": "error", "message": f"Unknown action: {action}"})

            if manager.get(conn_id) is None:
                # Dropped for overflow while we were reading
                return

    except WebSocketDisconnect:
        await manager.disconnect(conn_id)
    except Exception:
        logger.exception("ws_error", conn_id=conn_id)
        await manager.disconnect(conn_id)
