"""
WebSocket endpoint for real-time anomaly delivery.

Newly persisted anomalies are published on the Redis `anomalies` channel by
alerts.engine.publish_anomalies and relayed here to connected dashboards.
"""

import asyncio

import redis.asyncio as aioredis
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from alerts.engine import ANOMALY_CHANNEL
from core.config import get_settings
from core.security import decode_access_token

router = APIRouter()


async def authenticate_ws(token: str) -> dict | None:
    """Validate JWT token from WebSocket query param."""
    if get_settings().debug:
        return {"sub": "dev-user"}
    return decode_access_token(token)


@router.websocket("/ws/anomalies")
async def websocket_anomalies(websocket: WebSocket, token: str = Query(...)):
    """
    WebSocket endpoint that streams anomalies via Redis pub/sub.

    Connect: ws://host/ws/anomalies?token=<jwt>

    Messages sent to client:
        {"type": "anomaly", "payload": {...}}
        {"type": "heartbeat", "payload": {}}
    """
    user = await authenticate_ws(token)
    if user is None:
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()

    redis = aioredis.from_url(get_settings().redis_url)
    pubsub = redis.pubsub()
    await pubsub.subscribe(ANOMALY_CHANNEL)

    try:

        async def listen_redis():
            async for message in pubsub.listen():
                if message["type"] == "message":
                    try:
                        await websocket.send_text(message["data"].decode())
                    except Exception:
                        break

        async def send_heartbeat():
            while True:
                await asyncio.sleep(30)
                try:
                    await websocket.send_json({"type": "heartbeat", "payload": {}})
                except Exception:
                    break

        await asyncio.gather(listen_redis(), send_heartbeat())

    except WebSocketDisconnect:
        pass
    finally:
        await pubsub.unsubscribe(ANOMALY_CHANNEL)
        await pubsub.aclose()
        await redis.aclose()
