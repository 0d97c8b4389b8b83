"""
Conversation Store

Reads conversation threads from a JSON file of the form
``{"threads": [{"id": ..., "messages": [{"role", "content", "status"}]}]}``.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
from loguru import logger

from .errors import ThreadNotFoundError


class JsonConversationStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._threads: Dict[str, List[Dict[str, Any]]] = {}

    async def load(self):
        if not self.path.exists():
            self._threads = {}
            return
        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            data = json.loads(await f.read())
        threads = data.get("threads", []) if isinstance(data, dict) else data
        self._threads = {str(thread["id"]): thread.get("messages", []) for thread in threads}
        logger.debug(f"Loaded {len(self._threads)} conversation threads from {self.path}")

    async def get_thread_messages(self, thread_id: str) -> List[Dict[str, Any]]:
        if thread_id not in self._threads:
            raise ThreadNotFoundError(thread_id)
        return list(self._threads[thread_id])
