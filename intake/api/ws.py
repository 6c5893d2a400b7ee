"""Live new-study notifications for dashboards."""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notifications"])


@router.websocket("/ws/studies")
async def study_notifications(websocket: WebSocket):
    notifier = websocket.app.state.notifier
    await notifier.connect(websocket)
    try:
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict):
                await notifier.handle_message(websocket, message)
    except WebSocketDisconnect:
        logger.info("Notification socket disconnected")
    finally:
        notifier.disconnect(websocket)
