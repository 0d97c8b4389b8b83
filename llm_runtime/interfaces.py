"""
Collaborator Interfaces

Protocols for the components the runtime calls but does not own: the native
inference engine, hardware introspection, settings and conversation storage,
the tool catalog and the remote model catalog.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Protocol

from .types import (
    LoadingSettings,
    RemoteModelInfo,
    SystemInfo,
    ToolDefinition,
    ToolFunction,
    VramState,
)


class EngineContext(Protocol):
    context_size: int
    batch_size: int
    threads: int

    def get_sequence(self) -> Any: ...

    async def dispose(self) -> None: ...


class ChatSession(Protocol):
    def get_chat_history(self) -> List[Dict[str, Any]]: ...

    def set_chat_history(self, history: List[Dict[str, Any]]) -> None: ...

    async def prompt(
        self,
        text: str,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        functions: Optional[Dict[str, ToolFunction]] = None,
        on_text_chunk: Optional[Callable[[str], None]] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> str: ...

    async def dispose(self) -> None: ...


class EngineModel(Protocol):
    path: str
    gpu_layers: int
    offloaded_layers: Optional[int]

    async def create_context(self, context_size: int, batch_size: int, threads: int) -> EngineContext: ...

    async def dispose(self) -> None: ...


class InferenceEngine(Protocol):
    async def load_model(self, path: str, gpu_layers: int) -> EngineModel: ...

    def create_chat_session(self, sequence: Any) -> ChatSession: ...

    async def get_vram_state(self) -> VramState: ...

    async def get_gpu_type(self) -> Optional[str]: ...


class MetadataReader(Protocol):
    async def read_metadata(self, path: str) -> Dict[str, Any]: ...


class SettingsStore(Protocol):
    async def load_model_settings(self, model_id: str) -> Optional[LoadingSettings]: ...

    async def save_model_settings(self, model_id: str, settings: LoadingSettings) -> None: ...

    async def load_all_model_settings(self) -> Dict[str, LoadingSettings]: ...

    async def delete_model_settings(self, model_id: str) -> None: ...


class SystemInfoProvider(Protocol):
    async def get_system_info(self) -> SystemInfo: ...

    def invalidate_cache(self) -> None: ...


class ConversationStore(Protocol):
    async def load(self) -> None: ...

    async def get_thread_messages(self, thread_id: str) -> List[Dict[str, Any]]: ...


class ToolProvider(Protocol):
    async def get_tools(self) -> List[ToolDefinition]: ...


class RemoteCatalog(Protocol):
    async def list_available_models(self) -> List[RemoteModelInfo]: ...

    async def search_models(self, query: str) -> List[RemoteModelInfo]: ...

    def has_credential(self) -> bool: ...

    def get_credential(self) -> Optional[str]: ...
