"""
WebSocket handler for streaming chat with cancellation.

Client messages:
  {"type": "chat", "model": ..., "messages": [...], "thread_id": ..., ...}
  {"type": "cancel"}
"""

import asyncio
import json
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from llm_runtime.errors import LLMRuntimeError
from llm_runtime.types import GenerationOptions


class ConnectionManager:
    """Manages WebSocket connections."""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket, client_id: str):
        await websocket.accept()
        self.active_connections[client_id] = websocket
        logger.info(f"WebSocket connected: {client_id}")

    def disconnect(self, client_id: str):
        if self.active_connections.pop(client_id, None) is not None:
            logger.info(f"WebSocket disconnected: {client_id}")

    async def send_message(self, client_id: str, message: Dict[str, Any]) -> bool:
        websocket = self.active_connections.get(client_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(json.dumps(message))
            return True
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.warning(f"Error sending message to {client_id}: {e}")
            self.disconnect(client_id)
            return False


manager = ConnectionManager()


async def stream_chat(client_id: str, model_manager, payload: Dict[str, Any], signal: asyncio.Event):
    """Stream one generation to ``client_id``."""
    options = GenerationOptions(
        temperature=payload.get("temperature"),
        max_tokens=payload.get("max_tokens"),
        thread_id=payload.get("thread_id"),
        disable_functions=payload.get("disable_functions", False),
        disable_chat_history=payload.get("disable_chat_history", False),
        signal=signal,
    )
    await manager.send_message(client_id, {"type": "start"})

    chunk_count = 0
    parts = []
    try:
        async for chunk in model_manager.generate_stream_response(
            payload.get("model", ""), payload.get("messages", []), options
        ):
            chunk_count += 1
            parts.append(chunk)
            if not await manager.send_message(client_id, {"type": "chunk", "content": chunk, "chunk_id": chunk_count}):
                signal.set()
                logger.warning(f"Client {client_id} disconnected during streaming")
                return
    except LLMRuntimeError as e:
        await manager.send_message(client_id, {"type": "error", **e.to_dict()})
        return
    except Exception as e:
        logger.error(f"Error in chat stream for {client_id}: {e}")
        await manager.send_message(client_id, {"type": "error", "error": "GENERATION_FAILED", "detail": str(e)})
        return

    await manager.send_message(client_id, {
        "type": "complete",
        "total_chunks": chunk_count,
        "full_response": "".join(parts),
    })


async def handle_websocket(websocket: WebSocket, client_id: str = "default"):
    await manager.connect(websocket, client_id)

    from llm_service.main import model_manager

    generation: Optional[asyncio.Task] = None
    signal = asyncio.Event()

    try:
        while True:
            data = await websocket.receive_text()
            try:
                payload = json.loads(data)
            except ValueError:
                await manager.send_message(client_id, {"type": "error", "error": "INVALID_JSON"})
                continue

            if payload.get("type") == "cancel":
                signal.set()
                continue

            if model_manager is None:
                await manager.send_message(client_id, {"type": "error", "error": "Model manager not available"})
                continue
            if generation is not None and not generation.done():
                await manager.send_message(client_id, {"type": "error", "error": "GENERATION_IN_PROGRESS"})
                continue

            signal = asyncio.Event()
            generation = asyncio.create_task(stream_chat(client_id, model_manager, payload, signal))

    except WebSocketDisconnect:
        signal.set()
        manager.disconnect(client_id)
