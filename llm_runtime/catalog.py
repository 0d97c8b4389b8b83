"""
Remote Model Catalog

Lists and searches downloadable GGUF weight files on the Hugging Face Hub and
manages the access token used for gated repositories.
"""

import asyncio
import os
import time
from pathlib import Path
from typing import List, Optional, Tuple

from huggingface_hub import HfApi, hf_hub_url
from huggingface_hub.errors import HfHubHTTPError
from loguru import logger

from .registry import parse_model_filename
from .types import RemoteModelInfo


class HuggingFaceCatalog:
    """GGUF repositories on the Hub, most downloaded first."""

    def __init__(
        self,
        token: Optional[str] = None,
        token_file: Optional[Path] = None,
        limit: int = 20,
        ttl_seconds: float = 600.0,
        api: Optional[HfApi] = None,
    ):
        self._token = token
        self.token_file = Path(token_file) if token_file else None
        self.limit = limit
        self.ttl_seconds = ttl_seconds
        self.api = api or HfApi()
        self._cache: Optional[Tuple[float, List[RemoteModelInfo]]] = None

    def get_credential(self) -> Optional[str]:
        if self._token:
            return self._token
        if self.token_file and self.token_file.exists():
            token = self.token_file.read_text(encoding="utf-8").strip()
            return token or None
        return None

    def has_credential(self) -> bool:
        return self.get_credential() is not None

    def set_credential(self, token: str):
        self._token = token.strip()
        if self.token_file:
            self.token_file.parent.mkdir(parents=True, exist_ok=True)
            self.token_file.write_text(self._token, encoding="utf-8")
            os.chmod(self.token_file, 0o600)
        self.clear_cache()

    def remove_credential(self):
        self._token = None
        if self.token_file and self.token_file.exists():
            self.token_file.unlink()
        self.clear_cache()

    def clear_cache(self):
        self._cache = None

    async def list_available_models(self) -> List[RemoteModelInfo]:
        if self._cache and time.monotonic() - self._cache[0] < self.ttl_seconds:
            return self._cache[1]
        models = await asyncio.to_thread(self._fetch_models, None)
        self._cache = (time.monotonic(), models)
        logger.info(f"Fetched {len(models)} GGUF files from the Hugging Face Hub")
        return models

    async def search_models(self, query: str) -> List[RemoteModelInfo]:
        query = query.strip()
        if not query:
            return await self.list_available_models()
        return await asyncio.to_thread(self._fetch_models, query)

    def _fetch_models(self, search: Optional[str]) -> List[RemoteModelInfo]:
        token = self.get_credential()
        results = []
        for model in self.api.list_models(
            filter="gguf", search=search, sort="downloads", limit=self.limit, token=token
        ):
            try:
                info = self.api.model_info(model.id, files_metadata=True, token=token)
            except HfHubHTTPError as e:
                logger.warning(f"Skipping {model.id}: {e}")
                continue
            results.extend(self._entries_from_info(info))
        return results

    def _entries_from_info(self, info) -> List[RemoteModelInfo]:
        gguf = getattr(info, "gguf", None) or {}
        context_length = gguf.get("context_length")
        entries = []
        for sibling in info.siblings or []:
            filename = sibling.rfilename
            if not filename.lower().endswith(".gguf"):
                continue
            parsed = parse_model_filename(Path(filename).name)
            entries.append(RemoteModelInfo(
                name=parsed.name,
                repo_id=info.id,
                filename=Path(filename).name,
                url=hf_hub_url(repo_id=info.id, filename=filename),
                size=sibling.size or 0,
                description=f"{info.id} ({parsed.quantization or 'unknown'} quantization)",
                context_length=context_length or parsed.context_length,
                max_context_length=context_length,
                parameter_count=parsed.parameter_count,
                quantization=parsed.quantization,
                downloads=getattr(info, "downloads", 0) or 0,
                gated=bool(getattr(info, "gated", False)),
            ))
        return entries
