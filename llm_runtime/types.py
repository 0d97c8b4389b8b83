"""
Runtime Data Types

Descriptors, settings and state records shared by the runtime components.
"""

import asyncio
from dataclasses import dataclass, field, asdict, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class ModelState(str, Enum):
    """Lifecycle state of a single model id."""
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    UNLOADING = "unloading"


@dataclass(frozen=True)
class LoadingSettings:
    """Per-model loading settings. ``None`` means "not set by the user"."""
    gpu_layers: Optional[int] = None
    context_size: Optional[int] = None
    batch_size: Optional[int] = None
    threads: Optional[int] = None
    temperature: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LoadingSettings":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

    def update(self, **changes) -> "LoadingSettings":
        return replace(self, **changes)


@dataclass(frozen=True)
class ModelDescriptor:
    """A local weight file with its merged metadata."""
    id: str
    name: str
    filename: str
    path: str
    size: int
    downloaded: bool = True
    downloading: bool = False
    context_length: Optional[int] = None
    max_context_length: Optional[int] = None
    layer_count: Optional[int] = None
    parameter_count: Optional[str] = None
    quantization: Optional[str] = None
    model_type: str = "unknown"
    settings: LoadingSettings = field(default_factory=LoadingSettings)

    @property
    def size_gb(self) -> float:
        return self.size / (1024 ** 3)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["settings"] = self.settings.to_dict()
        return data


@dataclass
class RuntimeInfo:
    """Facts observed after a model finished loading."""
    actual_gpu_layers: int
    gpu_type: Optional[str]
    loading_time: float
    context_size: int
    batch_size: int
    threads: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ActiveModelEntry:
    """Native handles held for the single loaded model."""
    model_id: str
    descriptor: ModelDescriptor
    model: Any
    context: Any
    session: Any
    runtime_info: RuntimeInfo
    thread_id: Optional[str] = None


@dataclass
class DownloadProgress:
    progress: int = 0
    speed: str = "0 B/s"


@dataclass
class RemoteModelInfo:
    """A downloadable weight file from the remote catalog."""
    name: str
    repo_id: str
    filename: str
    url: str
    size: int = 0
    description: Optional[str] = None
    context_length: Optional[int] = None
    max_context_length: Optional[int] = None
    parameter_count: Optional[str] = None
    quantization: Optional[str] = None
    downloads: int = 0
    gated: bool = False

    @property
    def huggingface_url(self) -> str:
        return f"https://huggingface.co/{self.repo_id}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["huggingface_url"] = self.huggingface_url
        return data


@dataclass
class VramState:
    total: int = 0
    free: int = 0

    @property
    def used(self) -> int:
        return max(0, self.total - self.free)


@dataclass
class SystemInfo:
    """Snapshot of host resources used for sizing decisions."""
    has_gpu: bool
    gpu_type: Optional[str]
    vram_state: VramState
    total_ram: int
    free_ram: int
    cpu_threads: int
    disk_total: int = 0
    disk_free: int = 0
    platform: str = "unknown"
    architecture: str = "unknown"
    last_updated: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["vram_state"]["used"] = self.vram_state.used
        return data


@dataclass
class ToolDefinition:
    name: str
    description: str
    input_schema: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallRequest:
    """Returned to the caller instead of executing a tool."""
    id: str
    name: str
    arguments: Dict[str, Any]
    kind: str = "tool_call_request"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ToolFunction:
    """A tool as exposed to the native session."""
    description: str
    parameters: Dict[str, Any]
    handler: Callable[[Dict[str, Any]], Any]


@dataclass
class GenerationOptions:
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    thread_id: Optional[str] = None
    disable_functions: bool = False
    disable_chat_history: bool = False
    signal: Optional[asyncio.Event] = None


ChatMessages = List[Dict[str, Any]]
