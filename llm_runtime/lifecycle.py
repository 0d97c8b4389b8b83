"""
Model Lifecycle Manager

Loads and unloads models while keeping at most one loaded at a time.
Concurrent loads of the same model share one underlying load.
"""

import asyncio
import time
from typing import Any, Dict, Optional

from loguru import logger

from .errors import ModelLoadError
from .types import ActiveModelEntry, ModelDescriptor, ModelState, RuntimeInfo


class ActiveModelSlot:
    """Holds the single active model entry."""

    def __init__(self):
        self._entry: Optional[ActiveModelEntry] = None

    @property
    def entry(self) -> Optional[ActiveModelEntry]:
        return self._entry

    def __len__(self) -> int:
        return 0 if self._entry is None else 1

    def find(self, id_or_name: str) -> Optional[ActiveModelEntry]:
        entry = self._entry
        if entry is None:
            return None
        if id_or_name in (entry.model_id, entry.descriptor.name, entry.descriptor.filename):
            return entry
        return None

    def occupy(self, entry: ActiveModelEntry):
        if self._entry is not None and self._entry.model_id != entry.model_id:
            raise RuntimeError(f"Model {self._entry.model_id} is still active")
        self._entry = entry

    def release(self, model_id: str) -> Optional[ActiveModelEntry]:
        if self._entry is None or self._entry.model_id != model_id:
            return None
        entry, self._entry = self._entry, None
        return entry

    def replace_session(self, model_id: str, context: Any, session: Any, thread_id: Optional[str] = None):
        entry = self._entry
        if entry is None or entry.model_id != model_id:
            raise RuntimeError(f"Model {model_id} is not active")
        entry.context = context
        entry.session = session
        entry.thread_id = thread_id


class ModelLifecycleManager:
    """Load/unload with per-model serialization."""

    def __init__(self, engine, registry, context_calculator, settings, sessions, system_info, slot: ActiveModelSlot):
        self.engine = engine
        self.registry = registry
        self.context_calculator = context_calculator
        self.settings = settings
        self.sessions = sessions
        self.system_info = system_info
        self.slot = slot
        self._loading: Dict[str, asyncio.Task] = {}
        self._unloading: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, ModelState] = {}

    def find_active(self, id_or_name: str) -> Optional[ActiveModelEntry]:
        return self.slot.find(id_or_name)

    def is_model_loaded(self, id_or_name: str) -> bool:
        return self.slot.find(id_or_name) is not None

    def get_model_state(self, model_id: str) -> ModelState:
        if self.slot.find(model_id) is not None:
            return ModelState.LOADED
        if model_id in self._loading:
            return ModelState.LOADING
        return self._states.get(model_id, ModelState.UNLOADED)

    def get_model_status(self, model_id: str) -> Dict[str, Any]:
        entry = self.slot.find(model_id)
        state = self.get_model_state(model_id)
        return {
            "model_id": entry.model_id if entry else model_id,
            "state": state.value,
            "loaded": state == ModelState.LOADED,
            "loading": state == ModelState.LOADING,
            "thread_id": entry.thread_id if entry else None,
            "runtime_info": entry.runtime_info.to_dict() if entry else None,
        }

    async def load_model(self, id_or_name: str, thread_id: Optional[str] = None) -> ActiveModelEntry:
        descriptor = await self.registry.resolve(id_or_name)

        entry = self.slot.find(descriptor.id)
        if entry is not None:
            if thread_id and thread_id != entry.thread_id:
                await self.sessions.update_session_history(descriptor.id, thread_id)
            return entry

        task = self._loading.get(descriptor.id)
        if task is None:
            task = asyncio.create_task(self._load(descriptor, thread_id))
            self._loading[descriptor.id] = task
        else:
            logger.info(f"Waiting for in-flight load of {descriptor.name}")
        return await asyncio.shield(task)

    async def _load(self, descriptor: ModelDescriptor, thread_id: Optional[str]) -> ActiveModelEntry:
        model_id = descriptor.id
        self._states[model_id] = ModelState.LOADING
        try:
            await self._evict_others(model_id)

            system_info = await self.system_info.get_system_info()
            effective = await self.context_calculator.calculate_optimal_settings(
                descriptor, self.settings.get(model_id)
            )
            gpu_layers = effective.gpu_layers
            if descriptor.layer_count:
                gpu_layers = min(gpu_layers, descriptor.layer_count)

            logger.info(
                f"Loading {descriptor.name} (gpu_layers={gpu_layers}, context={effective.context_size}, "
                f"batch={effective.batch_size}, threads={effective.threads})"
            )
            started = time.monotonic()
            model = context = session = None
            try:
                model = await self.engine.load_model(descriptor.path, gpu_layers)
                context, session = await self.sessions.create_session(
                    model, effective.context_size, effective.batch_size, effective.threads
                )
            except Exception as e:
                if model is not None:
                    await model.dispose()
                raise ModelLoadError(model_id, e) from e

            if thread_id:
                try:
                    await self.sessions.populate_session_with_history(session, thread_id)
                except Exception:
                    await session.dispose()
                    await context.dispose()
                    await model.dispose()
                    raise

            actual_layers = model.offloaded_layers
            runtime_info = RuntimeInfo(
                actual_gpu_layers=gpu_layers if actual_layers is None else actual_layers,
                gpu_type=system_info.gpu_type,
                loading_time=time.monotonic() - started,
                context_size=effective.context_size,
                batch_size=effective.batch_size,
                threads=effective.threads,
            )
            entry = ActiveModelEntry(
                model_id=model_id,
                descriptor=descriptor,
                model=model,
                context=context,
                session=session,
                runtime_info=runtime_info,
                thread_id=thread_id,
            )

            # another model may have finished loading meanwhile
            await self._evict_others(model_id)
            self.slot.occupy(entry)
            self._states[model_id] = ModelState.LOADED
            self.system_info.invalidate_cache()
            logger.info(f"Loaded {descriptor.name} in {runtime_info.loading_time:.2f}s")
            return entry
        finally:
            self._loading.pop(model_id, None)
            if self._states.get(model_id) == ModelState.LOADING:
                self._states[model_id] = ModelState.UNLOADED

    async def _evict_others(self, model_id: str):
        current = self.slot.entry
        if current is not None and current.model_id != model_id:
            await self.unload_model(current.model_id)
        pending = [task for other_id, task in self._unloading.items() if other_id != model_id]
        if pending:
            await asyncio.gather(*(asyncio.shield(task) for task in pending))

    async def unload_model(self, model_id: str) -> bool:
        pending = self._unloading.get(model_id)
        if pending is not None:
            await asyncio.shield(pending)
            return False

        entry = self.slot.find(model_id)
        if entry is None:
            return False

        self.slot.release(entry.model_id)
        self._states[entry.model_id] = ModelState.UNLOADING
        task = asyncio.create_task(self._dispose(entry))
        self._unloading[entry.model_id] = task
        await asyncio.shield(task)
        logger.info(f"Unloaded {entry.descriptor.name}")
        return True

    async def _dispose(self, entry: ActiveModelEntry):
        try:
            await self.sessions.dispose(entry)
        finally:
            self._unloading.pop(entry.model_id, None)
            self._states[entry.model_id] = ModelState.UNLOADED
            self.system_info.invalidate_cache()

    async def unload_all(self):
        if self.slot.entry is not None:
            await self.unload_model(self.slot.entry.model_id)

    async def prepare_for_deletion(self, model_id: str):
        """Make sure ``model_id`` is neither loading nor loaded."""
        task = self._loading.get(model_id)
        if task is not None:
            try:
                await asyncio.shield(task)
            except Exception as e:
                logger.debug(f"In-flight load of {model_id} failed before deletion: {e}")
        await self.unload_model(model_id)
