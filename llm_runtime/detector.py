"""
Hardware Detection Module

Detects CPU, RAM, disk and GPU memory and keeps a cached snapshot for the
sizing decisions made by the runtime.
"""

import platform
import time
from pathlib import Path
from typing import Optional

import psutil
from loguru import logger

from .errors import ResourceUnavailableError
from .inference import InferenceState
from .interfaces import InferenceEngine
from .types import SystemInfo, VramState


class HardwareDetector:
    """Detects system capabilities, cached until invalidated."""

    def __init__(
        self,
        engine: InferenceEngine,
        inference_state: InferenceState,
        disk_path: str = ".",
    ):
        self.engine = engine
        self.inference_state = inference_state
        self.disk_path = Path(disk_path)
        self._cached: Optional[SystemInfo] = None

    def invalidate_cache(self):
        """Drop the snapshot so the next read re-queries hardware."""
        self._cached = None

    async def get_system_info(self) -> SystemInfo:
        if self._cached is not None:
            return self._cached

        # VRAM readings taken mid-generation are skewed
        if self.inference_state.is_active:
            logger.debug("Inference in progress, deferring hardware query")
        await self.inference_state.wait_until_idle()

        self._cached = await self._detect_hardware()
        logger.info(
            f"Hardware detected: {self._cached.cpu_threads} threads, "
            f"{self._cached.free_ram / (1024**3):.1f}GB RAM free, "
            f"GPU: {self._cached.gpu_type or 'none'}"
        )
        return self._cached

    async def _detect_hardware(self) -> SystemInfo:
        """Detect current hardware specifications."""
        memory = psutil.virtual_memory()
        cpu_threads = psutil.cpu_count(logical=False) or max(1, (psutil.cpu_count() or 2) // 2)

        try:
            disk = psutil.disk_usage(str(self.disk_path.resolve()))
            disk_total, disk_free = disk.total, disk.free
        except OSError as e:
            logger.warning(f"Could not read disk usage for {self.disk_path}: {e}")
            disk_total, disk_free = 0, 0

        try:
            vram = await self.engine.get_vram_state()
            gpu_type = await self.engine.get_gpu_type()
        except Exception as e:
            raise ResourceUnavailableError(f"Failed to query GPU state: {e}") from e

        return SystemInfo(
            has_gpu=gpu_type is not None and vram.total > 0,
            gpu_type=gpu_type,
            vram_state=VramState(total=vram.total, free=vram.free),
            total_ram=memory.total,
            free_ram=memory.available,
            cpu_threads=cpu_threads,
            disk_total=disk_total,
            disk_free=disk_free,
            platform=platform.system().lower(),
            architecture=platform.machine().lower(),
            last_updated=time.time(),
        )
