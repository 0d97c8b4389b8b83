"""
Local LLM Runtime

Resource-aware loading of local GGUF models with one active model, streaming
generation, and downloads from the Hugging Face Hub.
"""

from .config import RuntimeConfig
from .detector import HardwareDetector
from .errors import LLMRuntimeError
from .manager import ModelManager
from .types import GenerationOptions, LoadingSettings, ModelDescriptor, RemoteModelInfo

__all__ = [
    "ModelManager",
    "HardwareDetector",
    "RuntimeConfig",
    "LLMRuntimeError",
    "GenerationOptions",
    "LoadingSettings",
    "ModelDescriptor",
    "RemoteModelInfo",
]
