"""
Inference State

Process-wide "inference in progress" flag. The generation pipeline marks it
around every prompt; hardware introspection waits for it to clear so VRAM
readings are not taken mid-generation.
"""

import asyncio


class InferenceState:
    """Single boolean flag with an awaitable idle condition."""

    def __init__(self):
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_active(self) -> bool:
        return not self._idle.is_set()

    def mark_start(self):
        self._idle.clear()

    def mark_end(self):
        self._idle.set()

    async def wait_until_idle(self):
        await self._idle.wait()
