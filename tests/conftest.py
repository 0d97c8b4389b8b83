"""
Pytest configuration and fixtures for Local LLM Runtime tests.
"""

import asyncio
import copy
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest

from llm_runtime.config import RuntimeConfig
from llm_runtime.errors import ThreadNotFoundError
from llm_runtime.manager import ModelManager
from llm_runtime.tools import StaticToolProvider
from llm_runtime.types import LoadingSettings, RemoteModelInfo, SystemInfo, ToolDefinition, VramState

GIB = 1024 ** 3


class FakeSession:
    """Chat session that replays scripted chunks."""

    def __init__(self, engine: "FakeEngine", sequence):
        self.engine = engine
        self.sequence = sequence
        self.history: List[Dict[str, Any]] = []
        self.disposed = False

    def get_chat_history(self):
        return copy.deepcopy(self.history)

    def set_chat_history(self, history):
        self.history = copy.deepcopy(history)

    async def prompt(self, text, *, temperature=None, max_tokens=None, functions=None,
                     on_text_chunk=None, signal=None):
        self.engine.prompts.append({
            "text": text,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "functions": functions,
        })
        self.history.append({"type": "user", "text": text})

        parts = []
        for index, chunk in enumerate(self.engine.response_chunks):
            if self.engine.fail_at_chunk == index:
                raise RuntimeError("engine exploded")
            parts.append(chunk)
            if on_text_chunk:
                on_text_chunk(chunk)
            await asyncio.sleep(0)
        if self.engine.fail_at_chunk is not None and self.engine.fail_at_chunk >= len(self.engine.response_chunks):
            raise RuntimeError("engine exploded")

        if functions and self.engine.tool_call:
            name, arguments = self.engine.tool_call
            payload = functions[name].handler(arguments)
            self.engine.tool_payloads.append(payload)

        response = "".join(parts)
        self.history.append({"type": "model", "response": [response]})
        return response

    async def dispose(self):
        self.disposed = True


class FakeContext:
    def __init__(self, engine: "FakeEngine", context_size: int, batch_size: int, threads: int):
        self.engine = engine
        self.context_size = context_size
        self.batch_size = batch_size
        self.threads = threads
        self.disposed = False

    def get_sequence(self):
        return self

    async def dispose(self):
        self.disposed = True


class FakeModel:
    def __init__(self, engine: "FakeEngine", path: str, gpu_layers: int):
        self.engine = engine
        self.path = path
        self.gpu_layers = gpu_layers
        self.offloaded_layers = None
        self.disposed = False

    async def create_context(self, context_size, batch_size, threads):
        if self.engine.fail_context:
            raise RuntimeError("context allocation failed")
        self.offloaded_layers = self.engine.offloaded_layers
        context = FakeContext(self.engine, context_size, batch_size, threads)
        self.engine.contexts.append(context)
        return context

    async def dispose(self):
        self.disposed = True


class FakeEngine:
    """In-process stand-in for the native inference engine."""

    def __init__(self):
        self.load_calls: List[tuple] = []
        self.load_delay = 0.0
        self.fail_load = False
        self.fail_context = False
        self.offloaded_layers: Optional[int] = None
        self.models: List[FakeModel] = []
        self.contexts: List[FakeContext] = []
        self.sessions: List[FakeSession] = []
        self.prompts: List[Dict[str, Any]] = []
        self.response_chunks = ["Hello", ", ", "world"]
        self.fail_at_chunk: Optional[int] = None
        self.tool_call: Optional[tuple] = None
        self.tool_payloads: List[Dict[str, Any]] = []
        self.vram = VramState(total=8 * GIB, free=6 * GIB)
        self.gpu_type: Optional[str] = "NVIDIA"
        self.vram_error = False
        self.metadata: Dict[str, Dict[str, Any]] = {}

    async def load_model(self, path, gpu_layers):
        self.load_calls.append((path, gpu_layers))
        await asyncio.sleep(self.load_delay)
        if self.fail_load:
            raise RuntimeError("failed to map weights")
        model = FakeModel(self, path, gpu_layers)
        self.models.append(model)
        return model

    def create_chat_session(self, sequence):
        session = FakeSession(self, sequence)
        self.sessions.append(session)
        return session

    async def get_vram_state(self):
        if self.vram_error:
            raise RuntimeError("driver not responding")
        return self.vram

    async def get_gpu_type(self):
        return self.gpu_type

    async def read_metadata(self, path):
        name = Path(path).name
        if name not in self.metadata:
            raise ValueError("not a GGUF file")
        return self.metadata[name]


class FakeSystemInfo:
    def __init__(self, info: SystemInfo):
        self.info = info
        self.invalidations = 0

    async def get_system_info(self):
        return self.info

    def invalidate_cache(self):
        self.invalidations += 1


class FakeCatalog:
    def __init__(self, models: Optional[List[RemoteModelInfo]] = None, token: Optional[str] = None):
        self.models = list(models or [])
        self.token = token
        self.fail = False

    async def list_available_models(self):
        if self.fail:
            raise ConnectionError("hub unreachable")
        return list(self.models)

    async def search_models(self, query):
        return [m for m in self.models if query.lower() in m.name.lower()]

    def has_credential(self):
        return self.token is not None

    def get_credential(self):
        return self.token


class InMemorySettingsStore:
    def __init__(self, initial: Optional[Dict[str, LoadingSettings]] = None):
        self.data: Dict[str, LoadingSettings] = dict(initial or {})
        self.saves: List[tuple] = []

    async def load_model_settings(self, model_id):
        return self.data.get(model_id)

    async def save_model_settings(self, model_id, settings):
        self.saves.append((model_id, settings))
        self.data[model_id] = settings

    async def load_all_model_settings(self):
        return dict(self.data)

    async def delete_model_settings(self, model_id):
        self.data.pop(model_id, None)


class FakeConversationStore:
    def __init__(self, threads: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.threads = dict(threads or {})
        self.loads = 0

    async def load(self):
        self.loads += 1

    async def get_thread_messages(self, thread_id):
        if thread_id not in self.threads:
            raise ThreadNotFoundError(thread_id)
        return list(self.threads[thread_id])


@pytest.fixture
def temp_cache_dir():
    """Create a temporary cache directory for tests."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)


@pytest.fixture
def runtime_config(temp_cache_dir):
    return RuntimeConfig(
        models_dir=temp_cache_dir / "models",
        settings_dir=temp_cache_dir / "settings",
        conversations_file=temp_cache_dir / "conversations.json",
    )


@pytest.fixture
def system_info():
    return SystemInfo(
        has_gpu=True,
        gpu_type="NVIDIA",
        vram_state=VramState(total=8 * GIB, free=6 * GIB),
        total_ram=32 * GIB,
        free_ram=16 * GIB,
        cpu_threads=8,
        platform="linux",
        architecture="x86_64",
    )


@pytest.fixture
def cpu_system_info():
    return SystemInfo(
        has_gpu=False,
        gpu_type=None,
        vram_state=VramState(total=0, free=0),
        total_ram=16 * GIB,
        free_ram=12 * GIB,
        cpu_threads=4,
    )


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fake_system_info(system_info):
    return FakeSystemInfo(system_info)


@pytest.fixture
def fake_catalog():
    return FakeCatalog()


@pytest.fixture
def settings_store():
    return InMemorySettingsStore()


@pytest.fixture
def conversation_store():
    return FakeConversationStore({
        "thread-1": [
            {"role": "system", "content": "Be brief.", "status": "completed"},
            {"role": "user", "content": "Hi", "status": "completed"},
            {"role": "assistant", "content": "Hello!", "status": "completed"},
            {"role": "user", "content": "Half-typed", "status": "cancelled"},
            {"role": "assistant", "content": "Partial", "status": "processing"},
            {"role": "user", "content": "Still waiting", "status": "completed"},
        ],
    })


@pytest.fixture
def tool_provider():
    return StaticToolProvider([
        ToolDefinition(
            name="web_search",
            description="Search the web",
            input_schema={"type": "object", "properties": {"query": {"type": "string"}}},
        ),
    ])


@pytest.fixture
def model_files(runtime_config):
    """Two small GGUF files in the models directory."""
    runtime_config.models_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in ("Llama-3-8B-Instruct-Q4_K_M.gguf", "mistral-7b-32k.Q5_0.gguf"):
        path = runtime_config.models_dir / name
        path.write_bytes(b"GGUF" + b"\0" * 2044)
        paths.append(path)
    return paths


@pytest.fixture
def model_manager(runtime_config, fake_engine, fake_catalog, settings_store, conversation_store,
                  tool_provider, fake_system_info, model_files):
    """Model manager wired to in-process fakes."""
    return ModelManager(
        config=runtime_config,
        engine=fake_engine,
        catalog=fake_catalog,
        settings_store=settings_store,
        conversations=conversation_store,
        tools=tool_provider,
        system_info=fake_system_info,
    )


@pytest.fixture
def sample_chat_messages():
    return [
        {"role": "user", "content": "Hello, how are you?"},
        {"role": "assistant", "content": "I'm doing well, thank you!"},
        {"role": "user", "content": "What's 2+2?"},
    ]


@pytest.fixture
def test_app():
    from llm_service.main import app
    return app


@pytest.fixture
def test_client(test_app, model_manager, monkeypatch):
    """Test client with the global manager replaced by the fake-backed one."""
    from fastapi.testclient import TestClient
    import llm_service.main

    monkeypatch.setattr(llm_service.main, "model_manager", model_manager)
    return TestClient(test_app)


@pytest.fixture
def mock_psutil():
    """Mock psutil for hardware detection testing."""
    with patch('psutil.cpu_count') as mock_cpu:
        with patch('psutil.virtual_memory') as mock_memory:
            with patch('psutil.disk_usage') as mock_disk:
                mock_cpu.return_value = 8
                mock_memory.return_value.total = 16 * GIB
                mock_memory.return_value.available = 12 * GIB
                mock_disk.return_value.total = 512 * GIB
                mock_disk.return_value.free = 200 * GIB
                yield {
                    'cpu_count': mock_cpu,
                    'virtual_memory': mock_memory,
                    'disk_usage': mock_disk,
                }


@pytest.fixture
def mock_platform():
    """Mock platform module for testing."""
    with patch('platform.system') as mock_system:
        with patch('platform.machine') as mock_machine:
            mock_system.return_value = "Linux"
            mock_machine.return_value = "x86_64"
            yield {
                'system': mock_system,
                'machine': mock_machine,
            }
