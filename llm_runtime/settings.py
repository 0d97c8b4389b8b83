"""
Model Settings Storage

Per-model loading settings persisted as one JSON file per model id, with an
in-memory cache for the lifetime of the process.
"""

import json
from pathlib import Path
from typing import Dict, Optional

import aiofiles
from loguru import logger

from .interfaces import SettingsStore
from .types import LoadingSettings


class JsonSettingsStore:
    """Stores ``<settings_dir>/<model_id>.json``."""

    def __init__(self, settings_dir: Path):
        self.settings_dir = Path(settings_dir)

    def _path(self, model_id: str) -> Path:
        return self.settings_dir / f"{model_id}.json"

    async def load_model_settings(self, model_id: str) -> Optional[LoadingSettings]:
        path = self._path(model_id)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable settings for {model_id}: {e}")
            return None
        return LoadingSettings.from_dict(data)

    async def save_model_settings(self, model_id: str, settings: LoadingSettings):
        self.settings_dir.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self._path(model_id), "w", encoding="utf-8") as f:
            await f.write(json.dumps(settings.to_dict(), indent=2))

    async def load_all_model_settings(self) -> Dict[str, LoadingSettings]:
        if not self.settings_dir.exists():
            return {}
        all_settings = {}
        for path in sorted(self.settings_dir.glob("*.json")):
            settings = await self.load_model_settings(path.stem)
            if settings is not None:
                all_settings[path.stem] = settings
        return all_settings

    async def delete_model_settings(self, model_id: str):
        path = self._path(model_id)
        if path.exists():
            path.unlink()


class ModelSettingsService:
    """Cached front for a settings store."""

    def __init__(self, store: SettingsStore):
        self.store = store
        self._cache: Dict[str, LoadingSettings] = {}

    async def refresh(self):
        """Reload every model's settings from storage."""
        self._cache = dict(await self.store.load_all_model_settings())
        logger.info(f"Loaded settings for {len(self._cache)} models")

    def get(self, model_id: str) -> LoadingSettings:
        return self._cache.get(model_id, LoadingSettings())

    async def set(self, model_id: str, settings: LoadingSettings):
        self._cache[model_id] = settings
        await self.store.save_model_settings(model_id, settings)

    async def delete(self, model_id: str):
        self._cache.pop(model_id, None)
        await self.store.delete_model_settings(model_id)
