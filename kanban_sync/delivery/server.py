"""HTTP/WebSocket surface: client delivery socket, Pub/Sub push webhook, health check."""

from __future__ import annotations

import logging
from typing import Any

import jwt
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse, Response

from kanban_sync.delivery.registry import ConnectionRegistry
from kanban_sync.notifications.base import NotificationStrategy
from kanban_sync.notifications.pubsub import decode_push_data

logger = logging.getLogger(__name__)

JWT_ALGORITHMS = ["HS256"]


def authenticate(token: str | None, secret: str) -> str | None:
    """Return the ``userId`` claim of a valid token, or None."""
    if not token or not secret:
        return None
    try:
        claims: dict[str, Any] = jwt.decode(token, secret, algorithms=JWT_ALGORITHMS)
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected client token: %s", exc)
        return None
    user_id = claims.get("userId")
    if user_id is None or user_id == "":
        logger.info("Rejected client token without userId claim")
        return None
    return str(user_id)


def create_app(
    registry: ConnectionRegistry,
    strategy: NotificationStrategy,
    jwt_secret: str,
) -> FastAPI:
    """Build the FastAPI app. The caller serves it (uvicorn) and owns its lifetime."""
    app = FastAPI(title="kanban-sync")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "strategy": strategy.kind.value,
            "users_connected": registry.user_count,
        }

    @app.websocket("/ws")
    async def client_socket(websocket: WebSocket, token: str = "") -> None:
        user_id = authenticate(token, jwt_secret)
        if user_id is None:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        await registry.register(user_id, websocket)
        try:
            # Clients only listen; drain whatever they send until they hang up.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await registry.unregister(user_id, websocket)

    @app.post("/gmail/webhook")
    async def gmail_webhook(request: Request) -> Response:
        """Pub/Sub push endpoint. 204 acknowledges; any other status asks for redelivery."""
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"status": "error", "reason": "body is not JSON"}, status_code=400)
        if not isinstance(body, dict) or not isinstance(body.get("message"), dict):
            return JSONResponse({"status": "error", "reason": "no message field"}, status_code=400)

        data = decode_push_data(body["message"].get("data"))
        if await strategy.handle_notification(data):
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return JSONResponse({"status": "retry"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)

    return app
