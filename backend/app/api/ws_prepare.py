import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from app.prepare.gateway import get_gateway
from app.system_metrics import record_ws_disconnect
from core.config import WS_MAX_TEXT_BYTES

router = APIRouter()
logger = logging.getLogger("app.api.ws_prepare")


@router.websocket("/ws/prepare")
async def prepare_ws(websocket: WebSocket):
    gateway = get_gateway()
    await websocket.accept()

    async def _safe_send(payload: dict):
        if websocket.client_state != WebSocketState.CONNECTED:
            return
        await websocket.send_text(json.dumps(payload, ensure_ascii=False, default=str))

    connection = await gateway.connect(_safe_send)
    stop_reason = "other"

    try:
        while True:
            raw = await websocket.receive_text()
            if len(raw.encode("utf-8")) > WS_MAX_TEXT_BYTES:
                await gateway.send(
                    connection,
                    {"type": "error", "kind": "invalid-message", "message": "Message exceeds maximum size"},
                )
                continue
            try:
                message = json.loads(raw)
            except ValueError:
                await gateway.send(
                    connection,
                    {"type": "error", "kind": "invalid-message", "message": "Message is not valid JSON"},
                )
                continue
            await gateway.handle_message(connection, message)
    except WebSocketDisconnect:
        stop_reason = "client_disconnect"
    except Exception as exc:
        stop_reason = "receive_error"
        logger.warning("prepare ws receive failed | connection_id=%s err=%s", connection.connection_id, exc)
    finally:
        await gateway.disconnect(connection, reason=stop_reason)
        record_ws_disconnect(stop_reason)
