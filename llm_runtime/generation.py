"""
Generation Pipeline

Buffered and streaming generation against the active session, with tool
passthrough, optional history isolation, per-chunk cancellation and session
recovery after engine failures.
"""

import asyncio
import copy
import uuid
from collections import deque
from functools import partial
from typing import Any, AsyncIterator, Dict, List, Optional

from loguru import logger

from .errors import GenerationCancelledError, ModelNotLoadedError, NoUserMessageError
from .inference import InferenceState
from .types import ActiveModelEntry, ChatMessages, GenerationOptions, ToolCallRequest, ToolFunction


def extract_last_user_message(messages: ChatMessages) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return message.get("content") or ""
    raise NoUserMessageError()


def tool_call_request(name: str, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Handler result for every exposed tool: a request, never an execution."""
    return ToolCallRequest(id=f"call_{uuid.uuid4().hex}", name=name, arguments=arguments or {}).to_dict()


class StreamHandoff:
    """Bridges the engine's chunk callback to an async consumer.

    A waiting consumer receives the chunk directly; otherwise it is queued.
    ``None`` marks the end of the stream and is delivered once.
    """

    def __init__(self):
        self._pending: deque = deque()
        self._waiter: Optional[asyncio.Future] = None
        self._closed = False

    def push(self, chunk: Optional[str]):
        if self._closed:
            return
        if chunk is None:
            self._closed = True
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(chunk)
            self._waiter = None
        else:
            self._pending.append(chunk)

    async def next(self) -> Optional[str]:
        if self._pending:
            return self._pending.popleft()
        self._waiter = asyncio.get_running_loop().create_future()
        return await self._waiter


class GenerationPipeline:
    def __init__(self, lifecycle, sessions, tools, inference_state: InferenceState, settings=None):
        self.lifecycle = lifecycle
        self.sessions = sessions
        self.tools = tools
        self.inference_state = inference_state
        self.settings = settings

    async def _resolve_entry(self, id_or_name: str, options: GenerationOptions) -> ActiveModelEntry:
        entry = self.lifecycle.find_active(id_or_name)
        if entry is None and options.thread_id:
            entry = await self.lifecycle.load_model(id_or_name, options.thread_id)
        if entry is None:
            raise ModelNotLoadedError(id_or_name)
        return entry

    async def _functions(self, options: GenerationOptions) -> Optional[Dict[str, ToolFunction]]:
        if options.disable_functions or self.tools is None:
            return None
        tools = await self.tools.get_tools()
        if not tools:
            return None
        return {
            tool.name: ToolFunction(
                description=tool.description,
                parameters=tool.input_schema,
                handler=partial(tool_call_request, tool.name),
            )
            for tool in tools
        }

    def _prompt_kwargs(self, entry: ActiveModelEntry, options: GenerationOptions, functions) -> Dict[str, Any]:
        temperature = options.temperature
        if temperature is None and self.settings is not None:
            temperature = self.settings.get(entry.model_id).temperature
        return {
            "temperature": temperature,
            "max_tokens": options.max_tokens,
            "functions": functions,
            "signal": options.signal,
        }

    async def _recover(self, entry: ActiveModelEntry, options: GenerationOptions, error: BaseException):
        logger.error(f"Generation failed for {entry.descriptor.name}: {error!r}")
        try:
            await self.sessions.recreate_session(entry.model_id, options.thread_id or entry.thread_id)
        except Exception as e:
            logger.error(f"Failed to recreate session for {entry.descriptor.name}: {e!r}")

    async def generate_response(
        self,
        id_or_name: str,
        messages: ChatMessages,
        options: Optional[GenerationOptions] = None,
    ) -> str:
        options = options or GenerationOptions()
        entry = await self._resolve_entry(id_or_name, options)
        user_message = extract_last_user_message(messages)
        functions = await self._functions(options)

        session = entry.session
        snapshot = copy.deepcopy(session.get_chat_history()) if options.disable_chat_history else None

        self.inference_state.mark_start()
        try:
            response = await session.prompt(user_message, **self._prompt_kwargs(entry, options, functions))
        except (GenerationCancelledError, asyncio.CancelledError):
            if snapshot is not None:
                session.set_chat_history(snapshot)
            raise
        except Exception as e:
            await self._recover(entry, options, e)
            raise
        finally:
            self.inference_state.mark_end()

        if snapshot is not None:
            session.set_chat_history(snapshot)
        return response

    async def generate_stream_response(
        self,
        id_or_name: str,
        messages: ChatMessages,
        options: Optional[GenerationOptions] = None,
    ) -> AsyncIterator[str]:
        """Yield text chunks as the engine produces them."""
        options = options or GenerationOptions()
        entry = await self._resolve_entry(id_or_name, options)
        user_message = extract_last_user_message(messages)
        functions = await self._functions(options)

        session = entry.session
        snapshot = copy.deepcopy(session.get_chat_history()) if options.disable_chat_history else None
        handoff = StreamHandoff()
        failures: List[BaseException] = []

        async def run_prompt():
            try:
                await session.prompt(
                    user_message,
                    on_text_chunk=handoff.push,
                    **self._prompt_kwargs(entry, options, functions),
                )
            except Exception as e:
                failures.append(e)
            finally:
                handoff.push(None)

        def settle(_task=None):
            if snapshot is not None and not failed:
                session.set_chat_history(snapshot)
            self.inference_state.mark_end()

        failed = False
        self.inference_state.mark_start()
        task = asyncio.create_task(run_prompt())
        try:
            while True:
                chunk = await handoff.next()
                if chunk is None:
                    break
                yield chunk
                if options.signal is not None and options.signal.is_set():
                    raise GenerationCancelledError()

            await task
            if failures:
                error = failures[0]
                if not isinstance(error, GenerationCancelledError):
                    failed = True
                    await self._recover(entry, options, error)
                raise error
        finally:
            if task.done():
                settle()
            else:
                # the engine keeps running until it notices the signal
                task.add_done_callback(settle)
