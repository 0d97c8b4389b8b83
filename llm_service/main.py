"""
Main FastAPI Application

REST and server-sent-event endpoints over the local model runtime.
"""

import asyncio
import json
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field

from llm_runtime import ModelManager
from llm_runtime.errors import LLMRuntimeError, ModelNotFoundError
from llm_runtime.types import GenerationOptions, LoadingSettings, RemoteModelInfo


# Global model manager instance
model_manager: Optional[ModelManager] = None


def configure_logging():
    level = os.getenv("LOG_LEVEL", "INFO")
    logger.remove()
    logger.add(sys.stderr, level=level)
    log_file = os.getenv("LOG_FILE")
    if log_file:
        logger.add(log_file, level=level, rotation="10 MB", retention=5)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    global model_manager

    logger.info("Starting Local LLM Runtime service...")
    model_manager = ModelManager()
    await model_manager.initialize()

    yield

    logger.info("Shutting down Local LLM Runtime service...")
    if model_manager:
        await model_manager.shutdown()


app = FastAPI(
    title="Local LLM Runtime",
    description="Resource-aware local GGUF model runtime",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LLMRuntimeError)
async def runtime_error_handler(request: Request, exc: LLMRuntimeError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Pydantic models
class ChatMessage(BaseModel):
    role: str = Field(..., description="Message role: user, assistant, system")
    content: str = Field(..., description="Message content")


class ChatRequest(BaseModel):
    model: str = Field(..., description="Model id or name")
    messages: List[ChatMessage] = Field(..., description="Chat messages")
    thread_id: Optional[str] = Field(None, description="Conversation thread to load history from")
    temperature: Optional[float] = Field(None, description="Sampling temperature")
    max_tokens: Optional[int] = Field(None, description="Maximum tokens to generate")
    disable_functions: bool = Field(False, description="Do not expose tools to the model")
    disable_chat_history: bool = Field(False, description="Do not keep this exchange in the session")
    stream: bool = Field(True, description="Stream response")


class LoadModelRequest(BaseModel):
    model: str = Field(..., description="Model id or name")
    thread_id: Optional[str] = None


class SessionHistoryRequest(BaseModel):
    model: str
    thread_id: str


class SettingsRequest(BaseModel):
    gpu_layers: Optional[int] = None
    context_size: Optional[int] = None
    batch_size: Optional[int] = None
    threads: Optional[int] = None
    temperature: Optional[float] = None


class DownloadRequest(BaseModel):
    filename: str
    url: Optional[str] = None
    repo_id: Optional[str] = None
    name: Optional[str] = None
    size: int = 0


class HealthResponse(BaseModel):
    status: str
    message: str
    model_loaded: bool
    current_model: Optional[str] = None


def _manager() -> ModelManager:
    if not model_manager:
        raise HTTPException(status_code=503, detail="Model manager not initialized")
    return model_manager


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@app.get("/health", response_model=HealthResponse)
async def health_check():
    if not model_manager:
        return HealthResponse(status="error", message="Model manager not initialized", model_loaded=False)

    current = model_manager.get_current_model()
    return HealthResponse(
        status="healthy",
        message="Service is running",
        model_loaded=current is not None,
        current_model=current.name if current else None,
    )


@app.get("/system")
async def get_system_info():
    info = await _manager().get_system_info()
    return info.to_dict()


@app.get("/models")
async def list_models():
    models = await _manager().get_local_models()
    return [model.to_dict() for model in models]


@app.get("/models/available")
async def list_available_models():
    models = await _manager().get_available_models()
    return [model.to_dict() for model in models]


@app.get("/models/search")
async def search_models(q: str):
    models = await _manager().search_models(q)
    return [model.to_dict() for model in models]


async def _resolve_remote(manager: ModelManager, request: DownloadRequest) -> RemoteModelInfo:
    if request.url:
        return RemoteModelInfo(
            name=request.name or request.filename,
            repo_id=request.repo_id or "",
            filename=request.filename,
            url=request.url,
            size=request.size,
        )
    for remote in await manager.get_available_models():
        if remote.filename == request.filename:
            return remote
    raise ModelNotFoundError(request.filename)


@app.post("/models/download")
async def download_model(request: DownloadRequest):
    """Download a model file, streaming progress as server-sent events."""
    manager = _manager()
    remote = await _resolve_remote(manager, request)
    queue: asyncio.Queue = asyncio.Queue()

    async def on_progress(progress: int, speed: str):
        await queue.put({"status": "progress", "filename": remote.filename, "progress": progress, "speed": speed})

    async def run_download():
        try:
            path = await manager.download_model(remote, on_progress)
            await queue.put({"status": "complete", "filename": remote.filename, "path": path})
        except LLMRuntimeError as e:
            await queue.put({"status": "error", **e.to_dict()})
        except Exception as e:
            logger.error(f"Download of {remote.filename} failed: {e}")
            await queue.put({"status": "error", "error": "DOWNLOAD_FAILED", "detail": str(e)})
        finally:
            await queue.put(None)

    task = asyncio.create_task(run_download())

    async def stream_progress():
        yield _sse({"status": "starting", "filename": remote.filename})
        while True:
            event = await queue.get()
            if event is None:
                break
            yield _sse(event)
        await task

    return StreamingResponse(stream_progress(), media_type="text/event-stream")


@app.post("/models/download/{filename}/cancel")
async def cancel_download(filename: str):
    return {"cancelled": _manager().cancel_download(filename)}


@app.get("/models/download/{filename}/progress")
async def get_download_progress(filename: str):
    return _manager().get_download_progress(filename)


@app.delete("/models/{model_id}")
async def delete_model(model_id: str):
    await _manager().delete_model(model_id)
    return {"success": True, "model_id": model_id}


@app.get("/models/{model_id}/settings")
async def get_model_settings(model_id: str):
    settings = await _manager().get_model_settings(model_id)
    return settings.to_dict()


@app.put("/models/{model_id}/settings")
async def set_model_settings(model_id: str, request: SettingsRequest):
    settings = LoadingSettings.from_dict(request.model_dump(exclude_none=True))
    saved = await _manager().set_model_settings(model_id, settings)
    return saved.to_dict()


@app.get("/models/{model_id}/optimal-settings")
async def get_optimal_settings(model_id: str):
    settings = await _manager().calculate_optimal_settings(model_id)
    return settings.to_dict()


@app.post("/models/load")
async def load_model(request: LoadModelRequest):
    return await _manager().load_model(request.model, request.thread_id)


@app.post("/models/{model_id}/unload")
async def unload_model(model_id: str):
    unloaded = await _manager().unload_model(model_id)
    return {"success": True, "unloaded": unloaded}


@app.get("/models/{model_id}/status")
async def get_model_status(model_id: str):
    return _manager().get_model_status(model_id)


@app.post("/models/context-cache/clear")
async def clear_context_cache():
    _manager().clear_context_size_cache()
    return {"success": True}


@app.post("/sessions/history")
async def update_session_history(request: SessionHistoryRequest):
    await _manager().update_session_history(request.model, request.thread_id)
    return {"success": True}


def _generation_options(request: ChatRequest, signal: Optional[asyncio.Event] = None) -> GenerationOptions:
    return GenerationOptions(
        temperature=request.temperature,
        max_tokens=request.max_tokens,
        thread_id=request.thread_id,
        disable_functions=request.disable_functions,
        disable_chat_history=request.disable_chat_history,
        signal=signal,
    )


@app.post("/chat")
async def chat(request: ChatRequest):
    """Chat with the model, streamed as server-sent events or buffered."""
    manager = _manager()
    messages = [message.model_dump() for message in request.messages]

    if not request.stream:
        response = await manager.generate_response(request.model, messages, _generation_options(request))
        return {"response": response}

    async def generate():
        try:
            async for chunk in manager.generate_stream_response(
                request.model, messages, _generation_options(request)
            ):
                yield _sse({"type": "chunk", "content": chunk})
            yield "data: [DONE]\n\n"
        except LLMRuntimeError as e:
            logger.error(f"Error in chat stream: {e}")
            yield _sse({"type": "error", **e.to_dict()})
        except Exception as e:
            logger.error(f"Error in chat stream: {e}")
            yield _sse({"type": "error", "error": "GENERATION_FAILED", "detail": str(e)})

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, client_id: str = "default"):
    """WebSocket endpoint for streaming chat with cancellation."""
    from llm_service.websocket import handle_websocket
    await handle_websocket(websocket, client_id)


@app.get("/")
async def root():
    return {
        "service": "Local LLM Runtime",
        "version": "1.0.0",
        "endpoints": {
            "health": "/health",
            "system": "/system",
            "models": "/models",
            "chat": "/chat",
            "websocket": "/ws",
        },
    }


def run():
    configure_logging()
    uvicorn.run(
        "llm_service.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    run()
