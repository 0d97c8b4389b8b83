"""
Model Manager

Single entry point for callers: local and remote model listing, downloads,
per-model settings, loading, sessions and generation.
"""

from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from loguru import logger

from .catalog import HuggingFaceCatalog
from .config import RuntimeConfig
from .context import ContextCalculator
from .conversations import JsonConversationStore
from .detector import HardwareDetector
from .downloader import ModelDownloader, ProgressCallback
from .errors import ModelNotLoadedError
from .generation import GenerationPipeline
from .inference import InferenceState
from .lifecycle import ActiveModelSlot, ModelLifecycleManager
from .llama_engine import LlamaCppEngine
from .registry import ModelRegistry
from .sessions import SessionManager
from .settings import JsonSettingsStore, ModelSettingsService
from .tools import StaticToolProvider
from .types import (
    ChatMessages,
    GenerationOptions,
    LoadingSettings,
    ModelDescriptor,
    RemoteModelInfo,
    RuntimeInfo,
    SystemInfo,
)


class ModelManager:
    """Wires the runtime components together and exposes their operations."""

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        engine=None,
        catalog=None,
        settings_store=None,
        conversations=None,
        tools=None,
        system_info=None,
        inference_state: Optional[InferenceState] = None,
        downloader: Optional[ModelDownloader] = None,
    ):
        self.config = config or RuntimeConfig.from_env()
        self.engine = engine or LlamaCppEngine()
        self.inference_state = inference_state or InferenceState()
        self.catalog = catalog or HuggingFaceCatalog(
            token=self.config.hf_token,
            token_file=self.config.hf_token_file,
            limit=self.config.catalog_limit,
            ttl_seconds=self.config.catalog_ttl_seconds,
        )
        self.settings = ModelSettingsService(settings_store or JsonSettingsStore(self.config.settings_dir))
        self.conversations = conversations or JsonConversationStore(self.config.conversations_file)
        self.tools = tools or StaticToolProvider()
        self.system_info = system_info or HardwareDetector(
            self.engine, self.inference_state, disk_path=str(self.config.models_dir)
        )

        self.context_calculator = ContextCalculator(
            self.engine, self.system_info, cache_ttl_seconds=self.config.context_cache_ttl_seconds
        )
        self.downloader = downloader or ModelDownloader(self.config.models_dir, credentials=self.catalog)
        self.registry = ModelRegistry(
            self.config.models_dir,
            catalog=self.catalog,
            metadata_reader=self.engine,
            context_calculator=self.context_calculator,
            settings=self.settings,
            is_downloading=self.downloader.is_downloading,
        )
        self.slot = ActiveModelSlot()
        self.sessions = SessionManager(self.engine, self.conversations, self.slot)
        self.lifecycle = ModelLifecycleManager(
            self.engine,
            self.registry,
            self.context_calculator,
            self.settings,
            self.sessions,
            self.system_info,
            self.slot,
        )
        self.generation = GenerationPipeline(
            self.lifecycle, self.sessions, self.tools, self.inference_state, settings=self.settings
        )

    async def initialize(self):
        """Create directories, load persisted settings and start with a clean context cache."""
        self.config.ensure_directories()
        self.context_calculator.clear_cache()
        await self.settings.refresh()
        logger.info(f"Model manager ready (models dir: {self.config.models_dir})")

    async def shutdown(self):
        await self.lifecycle.unload_all()

    # Models

    async def get_local_models(self) -> List[ModelDescriptor]:
        return await self.registry.get_local_models()

    async def get_available_models(self) -> List[RemoteModelInfo]:
        return await self.catalog.list_available_models()

    async def search_models(self, query: str) -> List[RemoteModelInfo]:
        return await self.catalog.search_models(query)

    async def delete_model(self, model_id: str) -> bool:
        """Delete a weight file, unloading it first if active."""
        descriptor = await self.registry.resolve(model_id)
        await self.lifecycle.prepare_for_deletion(descriptor.id)
        path = Path(descriptor.path)
        if path.exists():
            path.unlink()
        await self.settings.delete(descriptor.id)
        self.context_calculator.clear_cache()
        logger.info(f"Deleted model {descriptor.filename}")
        return True

    # Downloads

    async def download_model(self, remote: RemoteModelInfo, on_progress: Optional[ProgressCallback] = None) -> str:
        path = await self.downloader.download_model(remote, on_progress)
        self.system_info.invalidate_cache()
        return path

    def cancel_download(self, filename: str) -> bool:
        return self.downloader.cancel_download(filename)

    def get_download_progress(self, filename: str) -> Dict[str, Any]:
        return self.downloader.get_download_progress(filename)

    # Settings

    async def get_model_settings(self, model_id: str) -> LoadingSettings:
        descriptor = await self.registry.resolve(model_id)
        return self.settings.get(descriptor.id)

    async def set_model_settings(self, model_id: str, settings: LoadingSettings) -> LoadingSettings:
        descriptor = await self.registry.resolve(model_id)
        await self.settings.set(descriptor.id, settings)
        return settings

    async def calculate_optimal_settings(self, model_id: str) -> LoadingSettings:
        """Computed settings for ``model_id`` ignoring anything the user set."""
        descriptor = await self.registry.resolve(model_id)
        return await self.context_calculator.calculate_optimal_settings(descriptor)

    def clear_context_size_cache(self):
        self.context_calculator.clear_cache()

    # Lifecycle

    async def load_model(self, id_or_name: str, thread_id: Optional[str] = None) -> Dict[str, Any]:
        entry = await self.lifecycle.load_model(id_or_name, thread_id)
        return {
            "success": True,
            "model_id": entry.model_id,
            "model_name": entry.descriptor.name,
            "runtime_info": entry.runtime_info.to_dict(),
        }

    async def unload_model(self, model_id: str) -> bool:
        return await self.lifecycle.unload_model(model_id)

    def is_model_loaded(self, id_or_name: str) -> bool:
        return self.lifecycle.is_model_loaded(id_or_name)

    def get_model_status(self, model_id: str) -> Dict[str, Any]:
        return self.lifecycle.get_model_status(model_id)

    def get_model_runtime_info(self, model_id: str) -> RuntimeInfo:
        entry = self.lifecycle.find_active(model_id)
        if entry is None:
            raise ModelNotLoadedError(model_id)
        return entry.runtime_info

    def get_current_model(self) -> Optional[ModelDescriptor]:
        entry = self.slot.entry
        return entry.descriptor if entry else None

    async def update_session_history(self, id_or_name: str, thread_id: str):
        await self.sessions.update_session_history(id_or_name, thread_id)

    # Generation

    async def generate_response(
        self,
        id_or_name: str,
        messages: ChatMessages,
        options: Optional[GenerationOptions] = None,
    ) -> str:
        return await self.generation.generate_response(id_or_name, messages, options)

    def generate_stream_response(
        self,
        id_or_name: str,
        messages: ChatMessages,
        options: Optional[GenerationOptions] = None,
    ) -> AsyncIterator[str]:
        return self.generation.generate_stream_response(id_or_name, messages, options)

    async def get_system_info(self) -> SystemInfo:
        return await self.system_info.get_system_info()
