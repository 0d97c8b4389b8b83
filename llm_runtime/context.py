"""
Context Calculator

Applies the resource estimates to live hardware readings: safe context sizes
bounded by free VRAM, GPU offload and batch sizes, and the merged effective
settings used to load a model.
"""

import time
from typing import Dict, Optional, Tuple

from loguru import logger

from . import resources
from .errors import ResourceUnavailableError
from .interfaces import InferenceEngine, SystemInfoProvider
from .resources import ResourceCalculator
from .types import LoadingSettings, ModelDescriptor, SystemInfo


class ContextCalculator:
    """VRAM-aware sizing with a short-lived cache of safe context sizes."""

    def __init__(
        self,
        engine: InferenceEngine,
        system_info: SystemInfoProvider,
        cache_ttl_seconds: float = 300.0,
    ):
        self.engine = engine
        self.system_info = system_info
        self.cache_ttl_seconds = cache_ttl_seconds
        self._context_cache: Dict[Tuple[str, int, int], Tuple[int, float]] = {}

    def clear_cache(self):
        self._context_cache.clear()
        logger.info("Context size cache cleared")

    async def calculate_safe_context_size(self, size_bytes: int, requested: int, filename: str) -> int:
        """Largest context up to ``requested`` whose footprint fits 80% of free VRAM.

        Without a GPU the request is returned as-is and RAM bounds the CPU path.
        A failed VRAM query raises instead of guessing.
        """
        key = (filename, size_bytes, requested)
        cached = self._context_cache.get(key)
        if cached and time.monotonic() - cached[1] < self.cache_ttl_seconds:
            return cached[0]

        try:
            vram = await self.engine.get_vram_state()
        except Exception as e:
            logger.error(f"Error calculating safe context size: {e}")
            raise ResourceUnavailableError(f"Cannot determine safe context size: {e}") from e

        if vram.total <= 0:
            context_size = requested
        else:
            budget = vram.free * resources.VRAM_BUDGET_FRACTION
            if resources.context_memory(requested) <= budget:
                context_size = requested
            else:
                context_size = resources.binary_search_context_size(budget, requested)
                if resources.context_memory(context_size) > budget:
                    logger.warning(
                        f"Even a {context_size}-token context for {filename} exceeds the VRAM budget "
                        f"({vram.free / resources.GIB:.1f}GB free)"
                    )
                logger.info(
                    f"Reduced context for {filename} from {requested} to {context_size} "
                    f"({vram.free / resources.GIB:.1f}GB VRAM free)"
                )

        self._context_cache[key] = (context_size, time.monotonic())
        return context_size

    async def calculate_optimal_gpu_and_batch_settings(
        self,
        descriptor: ModelDescriptor,
        context_size: int,
        system_info: Optional[SystemInfo] = None,
    ) -> Tuple[int, int]:
        """Return ``(gpu_layers, batch_size)`` for ``descriptor`` at ``context_size``."""
        info = system_info or await self.system_info.get_system_info()

        try:
            cpus, gpus = resources.topology_from_system_info(info)
            config = ResourceCalculator.calculate_optimal_config(
                cpus,
                gpus,
                resources.model_shape(descriptor),
                num_ctx=context_size,
                num_batch=resources.DEFAULT_BATCH_SIZE,
                num_gpu=-1,
            )
        except Exception as e:
            logger.warning(f"Failed to calculate optimal GPU/batch settings: {e}")
            return (
                resources.FALLBACK_GPU_LAYERS,
                resources.fallback_batch_size(descriptor.size, context_size),
            )

        if config.options.num_gpu == 0 or not info.has_gpu:
            logger.info(f"Falling back to CPU-only mode for {descriptor.name}")
            return 0, resources.cpu_batch_size(descriptor.size, context_size, info)

        return config.options.num_gpu, config.options.num_batch

    async def calculate_optimal_context_size(self, descriptor: ModelDescriptor) -> int:
        shape = resources.model_shape(descriptor)
        requested = descriptor.max_context_length or descriptor.context_length or resources.DEFAULT_CONTEXT_SIZE
        validated = ResourceCalculator.validate_context_size(requested, shape.train_ctx)
        return max(resources.MIN_CONTEXT_SIZE, validated)

    async def calculate_optimal_settings(
        self,
        descriptor: ModelDescriptor,
        user_settings: Optional[LoadingSettings] = None,
    ) -> LoadingSettings:
        """Merge ``user_settings`` over computed defaults for ``descriptor``."""
        user_settings = user_settings or LoadingSettings()
        info = await self.system_info.get_system_info()

        default_context = await self.calculate_optimal_context_size(descriptor)
        gpu_layers, batch_size = await self.calculate_optimal_gpu_and_batch_settings(
            descriptor, default_context, info
        )
        defaults = LoadingSettings(
            gpu_layers=gpu_layers,
            context_size=default_context,
            batch_size=batch_size,
            threads=info.cpu_threads,
            temperature=resources.DEFAULT_TEMPERATURE,
        )
        effective = resources.merge_effective_settings(user_settings, defaults)

        if user_settings.gpu_layers == -1:
            logger.info(f"Auto-calculated GPU layers: {effective.gpu_layers}")
        elif user_settings.gpu_layers is not None:
            logger.info(f"Using user-set GPU layers: {effective.gpu_layers}")
        if user_settings.context_size is not None:
            logger.info(f"Using user-set context size: {effective.context_size}")

        return effective
