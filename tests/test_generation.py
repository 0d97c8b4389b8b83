"""
Tests for buffered and streaming generation.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from llm_runtime.errors import GenerationCancelledError, ModelNotLoadedError, NoUserMessageError
from llm_runtime.generation import StreamHandoff, extract_last_user_message, tool_call_request
from llm_runtime.types import GenerationOptions, LoadingSettings

LLAMA = "Llama-3-8B-Instruct-Q4_K_M"


async def _collect(stream):
    return [chunk async for chunk in stream]


class TestHelpers:
    def test_last_user_message(self, sample_chat_messages):
        assert extract_last_user_message(sample_chat_messages) == "What's 2+2?"

    def test_no_user_message(self):
        with pytest.raises(NoUserMessageError):
            extract_last_user_message([{"role": "system", "content": "You are terse."}])

    def test_tool_call_request_shape(self):
        payload = tool_call_request("web_search", {"query": "weather"})

        assert payload["kind"] == "tool_call_request"
        assert payload["name"] == "web_search"
        assert payload["arguments"] == {"query": "weather"}
        assert payload["id"].startswith("call_")

    @pytest.mark.asyncio
    async def test_handoff_queues_and_ends_once(self):
        handoff = StreamHandoff()
        handoff.push("a")
        handoff.push("b")
        handoff.push(None)
        handoff.push("late")

        assert await handoff.next() == "a"
        assert await handoff.next() == "b"
        assert await handoff.next() is None

    @pytest.mark.asyncio
    async def test_handoff_wakes_waiting_consumer(self):
        handoff = StreamHandoff()
        waiter = asyncio.create_task(handoff.next())
        await asyncio.sleep(0)

        handoff.push("chunk")

        assert await waiter == "chunk"


class TestGenerateResponse:
    @pytest.mark.asyncio
    async def test_buffered_response(self, model_manager, sample_chat_messages, fake_engine):
        await model_manager.load_model(LLAMA)

        response = await model_manager.generate_response(LLAMA, sample_chat_messages)

        assert response == "Hello, world"
        assert fake_engine.prompts[-1]["text"] == "What's 2+2?"
        assert model_manager.slot.entry.session.history[-1] == {"type": "model", "response": ["Hello, world"]}
        assert not model_manager.inference_state.is_active

    @pytest.mark.asyncio
    async def test_requires_loaded_model(self, model_manager, sample_chat_messages):
        with pytest.raises(ModelNotLoadedError):
            await model_manager.generate_response(LLAMA, sample_chat_messages)

    @pytest.mark.asyncio
    async def test_thread_id_loads_on_demand(self, model_manager, sample_chat_messages, fake_engine):
        response = await model_manager.generate_response(
            LLAMA, sample_chat_messages, GenerationOptions(thread_id="thread-1")
        )

        assert response == "Hello, world"
        assert len(fake_engine.load_calls) == 1
        assert model_manager.slot.entry.thread_id == "thread-1"

    @pytest.mark.asyncio
    async def test_no_user_message(self, model_manager):
        await model_manager.load_model(LLAMA)

        with pytest.raises(NoUserMessageError):
            await model_manager.generate_response(LLAMA, [{"role": "assistant", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_temperature_falls_back_to_model_settings(self, model_manager, sample_chat_messages, fake_engine):
        await model_manager.set_model_settings(LLAMA, LoadingSettings(temperature=0.3))
        await model_manager.load_model(LLAMA)

        await model_manager.generate_response(LLAMA, sample_chat_messages)
        await model_manager.generate_response(LLAMA, sample_chat_messages, GenerationOptions(temperature=1.1))

        assert fake_engine.prompts[0]["temperature"] == 0.3
        assert fake_engine.prompts[1]["temperature"] == 1.1

    @pytest.mark.asyncio
    async def test_disable_chat_history(self, model_manager, sample_chat_messages):
        await model_manager.load_model(LLAMA, thread_id="thread-1")
        session = model_manager.slot.entry.session
        before = session.get_chat_history()

        await model_manager.generate_response(
            LLAMA, sample_chat_messages, GenerationOptions(disable_chat_history=True)
        )

        assert session.get_chat_history() == before

    @pytest.mark.asyncio
    async def test_failure_replaces_session(self, model_manager, sample_chat_messages, fake_engine):
        await model_manager.load_model(LLAMA)
        old_session = model_manager.slot.entry.session
        fake_engine.fail_at_chunk = 0

        with pytest.raises(RuntimeError, match="engine exploded"):
            await model_manager.generate_response(LLAMA, sample_chat_messages)

        assert model_manager.slot.entry.session is not old_session
        assert old_session.disposed
        assert not model_manager.inference_state.is_active

    @pytest.mark.asyncio
    async def test_tools_return_call_requests(self, model_manager, sample_chat_messages, fake_engine):
        await model_manager.load_model(LLAMA)
        fake_engine.tool_call = ("web_search", {"query": "weather"})

        await model_manager.generate_response(LLAMA, sample_chat_messages)

        payload = fake_engine.tool_payloads[0]
        assert payload["kind"] == "tool_call_request"
        assert payload["name"] == "web_search"
        assert payload["arguments"] == {"query": "weather"}
        assert set(fake_engine.prompts[0]["functions"]) == {"web_search"}

    @pytest.mark.asyncio
    async def test_disable_functions(self, model_manager, sample_chat_messages, fake_engine):
        await model_manager.load_model(LLAMA)

        await model_manager.generate_response(
            LLAMA, sample_chat_messages, GenerationOptions(disable_functions=True)
        )

        assert fake_engine.prompts[0]["functions"] is None


class TestGenerateStreamResponse:
    @pytest.mark.asyncio
    async def test_chunks_in_order(self, model_manager, sample_chat_messages):
        await model_manager.load_model(LLAMA)

        chunks = await _collect(model_manager.generate_stream_response(LLAMA, sample_chat_messages))

        assert chunks == ["Hello", ", ", "world"]
        assert not model_manager.inference_state.is_active

    @pytest.mark.asyncio
    async def test_inference_flag_set_while_streaming(self, model_manager, sample_chat_messages):
        await model_manager.load_model(LLAMA)
        seen = []

        async for _ in model_manager.generate_stream_response(LLAMA, sample_chat_messages):
            seen.append(model_manager.inference_state.is_active)

        assert all(seen)
        assert not model_manager.inference_state.is_active

    @pytest.mark.asyncio
    async def test_disable_chat_history(self, model_manager, sample_chat_messages):
        await model_manager.load_model(LLAMA, thread_id="thread-1")
        session = model_manager.slot.entry.session
        before = session.get_chat_history()

        await _collect(model_manager.generate_stream_response(
            LLAMA, sample_chat_messages, GenerationOptions(disable_chat_history=True)
        ))

        assert session.get_chat_history() == before

    @pytest.mark.asyncio
    async def test_history_kept_by_default(self, model_manager, sample_chat_messages):
        await model_manager.load_model(LLAMA)
        session = model_manager.slot.entry.session

        await _collect(model_manager.generate_stream_response(LLAMA, sample_chat_messages))

        assert session.get_chat_history()[-1] == {"type": "model", "response": ["Hello, world"]}

    @pytest.mark.asyncio
    async def test_failure_mid_stream_replaces_session(self, model_manager, sample_chat_messages, fake_engine):
        await model_manager.load_model(LLAMA)
        old_session = model_manager.slot.entry.session
        fake_engine.fail_at_chunk = 1
        chunks = []

        with pytest.raises(RuntimeError, match="engine exploded"):
            async for chunk in model_manager.generate_stream_response(LLAMA, sample_chat_messages):
                chunks.append(chunk)

        assert chunks == ["Hello"]
        assert model_manager.slot.entry.session is not old_session
        assert not model_manager.inference_state.is_active

    @pytest.mark.asyncio
    async def test_recreation_failure_surfaces_original_error(self, model_manager, sample_chat_messages, fake_engine):
        await model_manager.load_model(LLAMA)
        fake_engine.fail_at_chunk = 0
        model_manager.sessions.recreate_session = AsyncMock(side_effect=RuntimeError("out of memory"))

        with pytest.raises(RuntimeError, match="engine exploded"):
            await _collect(model_manager.generate_stream_response(LLAMA, sample_chat_messages))

        model_manager.sessions.recreate_session.assert_awaited_once()
        assert not model_manager.inference_state.is_active

    @pytest.mark.asyncio
    async def test_cancellation_between_chunks(self, model_manager, sample_chat_messages, fake_engine):
        await model_manager.load_model(LLAMA)
        session = model_manager.slot.entry.session
        signal = asyncio.Event()
        chunks = []

        with pytest.raises(GenerationCancelledError):
            async for chunk in model_manager.generate_stream_response(
                LLAMA, sample_chat_messages, GenerationOptions(signal=signal)
            ):
                chunks.append(chunk)
                signal.set()

        assert chunks == ["Hello"]
        await asyncio.wait_for(model_manager.inference_state.wait_until_idle(), timeout=1)
        assert model_manager.slot.entry.session is session
        assert len(fake_engine.sessions) == 1

    @pytest.mark.asyncio
    async def test_cancelled_stream_restores_history_once_engine_settles(self, model_manager, sample_chat_messages):
        await model_manager.load_model(LLAMA, thread_id="thread-1")
        session = model_manager.slot.entry.session
        before = session.get_chat_history()
        signal = asyncio.Event()

        with pytest.raises(GenerationCancelledError):
            async for _ in model_manager.generate_stream_response(
                LLAMA, sample_chat_messages, GenerationOptions(signal=signal, disable_chat_history=True)
            ):
                signal.set()

        await asyncio.wait_for(model_manager.inference_state.wait_until_idle(), timeout=1)
        assert model_manager.slot.entry.session is session
        assert session.get_chat_history() == before
