"""
llama.cpp Engine Integration

Native inference engine backed by llama-cpp-python. Blocking llama.cpp calls
run in worker threads so the event loop keeps serving other requests.
"""

import asyncio
import copy
import gc
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil
import torch
from loguru import logger

from .errors import GenerationCancelledError
from .types import ToolFunction, VramState


def _next_chunk(iterator):
    try:
        return next(iterator)
    except StopIteration:
        return None


def _release_gpu_memory():
    gc.collect()
    if torch.cuda.is_available():
        torch.cuda.empty_cache()
    elif torch.backends.mps.is_available():
        torch.mps.empty_cache()


def offloaded_layer_count(llm) -> int:
    """Layers llama.cpp actually placed on the GPU for ``llm``."""
    import llama_cpp

    if not llama_cpp.llama_supports_gpu_offload():
        return 0
    requested = llm.model_params.n_gpu_layers
    block_count = next(
        (int(value) for key, value in llm.metadata.items() if key.endswith(".block_count")),
        None,
    )
    if block_count is None:
        return max(requested, 0)
    if requested < 0:
        return block_count
    return min(requested, block_count)


def history_to_messages(history: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Session history items to chat-completion messages."""
    messages = []
    for item in history:
        if item["type"] == "system":
            messages.append({"role": "system", "content": item["text"]})
        elif item["type"] == "user":
            messages.append({"role": "user", "content": item["text"]})
        elif item["type"] == "model":
            text = "".join(part for part in item.get("response", []) if isinstance(part, str))
            messages.append({"role": "assistant", "content": text})
    return messages


class LlamaCppChatSession:
    """Conversation bound to one llama.cpp context."""

    def __init__(self, llm):
        self.llm = llm
        self._history: List[Dict[str, Any]] = []
        self.disposed = False

    def get_chat_history(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._history)

    def set_chat_history(self, history: List[Dict[str, Any]]):
        self._history = copy.deepcopy(history)

    async def prompt(
        self,
        text: str,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        functions: Optional[Dict[str, ToolFunction]] = None,
        on_text_chunk: Optional[Callable[[str], None]] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> str:
        messages = history_to_messages(self._history) + [{"role": "user", "content": text}]
        kwargs: Dict[str, Any] = {"messages": messages, "stream": True}
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if functions:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {"name": name, "description": fn.description, "parameters": fn.parameters},
                }
                for name, fn in functions.items()
            ]

        stream = await asyncio.to_thread(self.llm.create_chat_completion, **kwargs)

        parts: List[str] = []
        tool_calls: Dict[int, Dict[str, str]] = {}

        def emit(chunk_text: str):
            parts.append(chunk_text)
            if on_text_chunk:
                on_text_chunk(chunk_text)

        while True:
            chunk = await asyncio.to_thread(_next_chunk, stream)
            if chunk is None:
                break
            if signal is not None and signal.is_set():
                raise GenerationCancelledError()

            delta = chunk["choices"][0].get("delta", {})
            if delta.get("content"):
                emit(delta["content"])
            for call in delta.get("tool_calls") or []:
                slot = tool_calls.setdefault(call.get("index", 0), {"name": "", "arguments": ""})
                function = call.get("function") or {}
                slot["name"] += function.get("name") or ""
                slot["arguments"] += function.get("arguments") or ""

        for call in tool_calls.values():
            tool = (functions or {}).get(call["name"])
            if tool is None:
                logger.warning(f"Model requested unknown tool {call['name']}")
                continue
            arguments = json.loads(call["arguments"] or "{}")
            emit(json.dumps(tool.handler(arguments)))

        response = "".join(parts)
        self._history.append({"type": "user", "text": text})
        self._history.append({"type": "model", "response": [response]})
        return response

    async def dispose(self):
        self._history = []
        self.disposed = True


class LlamaCppContext:
    """A llama.cpp instance sized for one context window."""

    def __init__(self, llm, context_size: int, batch_size: int, threads: int):
        self.llm = llm
        self.context_size = context_size
        self.batch_size = batch_size
        self.threads = threads

    def get_sequence(self):
        return self.llm

    async def dispose(self):
        if self.llm is None:
            return
        close = getattr(self.llm, "close", None)
        if close:
            await asyncio.to_thread(close)
        self.llm = None
        _release_gpu_memory()


class LlamaCppModel:
    """Handle to a weight file and its GPU offload setting.

    llama.cpp maps the weights when a context is created, so the memory is
    committed by ``create_context``.
    """

    def __init__(self, path: str, gpu_layers: int):
        self.path = path
        self.gpu_layers = gpu_layers
        self.offloaded_layers: Optional[int] = None

    async def create_context(self, context_size: int, batch_size: int, threads: int) -> LlamaCppContext:
        from llama_cpp import Llama

        logger.info(
            f"Creating llama.cpp context for {Path(self.path).name} "
            f"(context={context_size}, batch={batch_size}, threads={threads}, gpu_layers={self.gpu_layers})"
        )
        llm = await asyncio.to_thread(
            Llama,
            model_path=self.path,
            n_ctx=context_size,
            n_batch=batch_size,
            n_threads=threads,
            n_gpu_layers=self.gpu_layers,
            verbose=False,
        )
        self.offloaded_layers = offloaded_layer_count(llm)
        if self.offloaded_layers != self.gpu_layers:
            logger.info(f"llama.cpp offloaded {self.offloaded_layers} of {self.gpu_layers} requested GPU layers")
        return LlamaCppContext(llm, context_size, batch_size, threads)

    async def dispose(self):
        _release_gpu_memory()


class LlamaCppEngine:
    """Loads GGUF models and reports GPU memory through torch."""

    async def load_model(self, path: str, gpu_layers: int) -> LlamaCppModel:
        if not Path(path).is_file():
            raise FileNotFoundError(f"Model file not found: {path}")
        return LlamaCppModel(path, gpu_layers)

    def create_chat_session(self, sequence) -> LlamaCppChatSession:
        return LlamaCppChatSession(sequence)

    async def get_vram_state(self) -> VramState:
        if torch.cuda.is_available():
            free, total = torch.cuda.mem_get_info(0)
            return VramState(total=total, free=free)
        if torch.backends.mps.is_available():
            # unified memory
            memory = psutil.virtual_memory()
            return VramState(total=memory.total, free=memory.available)
        return VramState(total=0, free=0)

    async def get_gpu_type(self) -> Optional[str]:
        if torch.cuda.is_available():
            return "AMD" if getattr(torch.version, "hip", None) else "NVIDIA"
        if torch.backends.mps.is_available():
            return "Apple"
        return None

    async def read_metadata(self, path: str) -> Dict[str, Any]:
        """GGUF key/value metadata, read with a vocabulary-only load."""
        from llama_cpp import Llama

        def _read():
            llm = Llama(model_path=path, vocab_only=True, verbose=False)
            try:
                return dict(llm.metadata)
            finally:
                close = getattr(llm, "close", None)
                if close:
                    close()

        return await asyncio.to_thread(_read)
