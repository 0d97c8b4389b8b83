"""
Runtime Configuration

Environment-driven settings for directories, credentials and cache lifetimes.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger


@dataclass
class RuntimeConfig:
    """Paths and tunables for one runtime instance."""
    models_dir: Path
    settings_dir: Path
    conversations_file: Path
    hf_token: Optional[str] = None
    hf_token_file: Optional[Path] = None
    catalog_limit: int = 20
    catalog_ttl_seconds: float = 600.0
    context_cache_ttl_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        models_dir = Path(os.getenv("MODEL_CACHE_DIR", "./models_cache"))
        return cls(
            models_dir=models_dir,
            settings_dir=Path(os.getenv("MODEL_SETTINGS_DIR", str(models_dir / "settings"))),
            conversations_file=Path(os.getenv("CONVERSATIONS_FILE", str(models_dir / "conversations.json"))),
            hf_token=os.getenv("HF_TOKEN") or None,
            hf_token_file=Path(os.getenv("HF_TOKEN_FILE", str(models_dir / "hf-token"))),
            catalog_limit=int(os.getenv("CATALOG_LIMIT", "20")),
            catalog_ttl_seconds=float(os.getenv("CATALOG_TTL_SECONDS", "600")),
            context_cache_ttl_seconds=float(os.getenv("CONTEXT_CACHE_TTL_SECONDS", "300")),
        )

    def ensure_directories(self):
        """Create the model and settings directories if missing."""
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.settings_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Using models dir {self.models_dir}, settings dir {self.settings_dir}")
