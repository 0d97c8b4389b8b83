"""
Model Registry

Enumerates local GGUF weight files and merges what is known about each one:
remote catalog entries, metadata embedded in the file and hints in the
filename. Every returned descriptor carries a context length that fits the
current VRAM.
"""

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from . import resources
from .errors import ModelNotFoundError
from .types import ModelDescriptor, RemoteModelInfo

WEIGHT_EXTENSION = ".gguf"
METADATA_ARCHITECTURES = ("llama", "mistral", "gpt", "qwen")

PARAMETER_PATTERN = re.compile(r"(\d+\.?\d*)B", re.IGNORECASE)
QUANTIZATION_PATTERNS = [
    re.compile(r"(IQ\d+_[A-Z]+_?[A-Z]*)", re.IGNORECASE),
    re.compile(r"(Q\d+_[A-Z]+_?[A-Z]*)", re.IGNORECASE),
    re.compile(r"(IQ\d+)", re.IGNORECASE),
    re.compile(r"(Q\d+)", re.IGNORECASE),
    re.compile(r"(f16|f32|fp16|fp32)", re.IGNORECASE),
]
CONTEXT_PATTERN = re.compile(r"(\d+)k", re.IGNORECASE)

MODEL_TYPE_KEYWORDS = [
    ("code", ("code", "coder", "starcoder", "codellama", "phind")),
    ("embedding", ("embed", "bge-", "e5-", "sentence", "minilm")),
    ("vision", ("vision", "llava", "moondream", "cogvlm", "qwen-vl", "minicpm-v")),
    ("chat", ("chat", "instruct", "alpaca", "vicuna", "mistral", "llama", "gemma",
              "qwen", "phi-", "yi-", "baichuan", "chatglm")),
]


@dataclass
class ParsedFilename:
    name: str
    parameter_count: Optional[str] = None
    quantization: Optional[str] = None
    context_length: Optional[int] = None
    model_type: str = "unknown"


def parse_model_filename(filename: str) -> ParsedFilename:
    """Best-effort metadata from a weight file name."""
    lower = filename.lower()
    name = filename[: -len(WEIGHT_EXTENSION)] if lower.endswith(WEIGHT_EXTENSION) else filename

    model_type = "unknown"
    for candidate, keywords in MODEL_TYPE_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            model_type = candidate
            break

    match = PARAMETER_PATTERN.search(filename)
    parameter_count = f"{match.group(1)}B" if match else None

    quantization = None
    for pattern in QUANTIZATION_PATTERNS:
        match = pattern.search(filename)
        if match:
            quantization = match.group(1).upper()
            break
    if quantization is None and lower.endswith(WEIGHT_EXTENSION):
        quantization = "F16"

    match = CONTEXT_PATTERN.search(filename)
    context_length = int(match.group(1)) * 1024 if match else None

    return ParsedFilename(
        name=name,
        parameter_count=parameter_count,
        quantization=quantization,
        context_length=context_length,
        model_type=model_type,
    )


def model_id_for_path(path: Path) -> str:
    return hashlib.sha256(str(path.resolve()).encode("utf-8")).hexdigest()


def extract_gguf_fields(metadata: Dict[str, Any]) -> Dict[str, Optional[int]]:
    """Layer count and trained context length from flat GGUF key/value metadata."""
    architectures = []
    declared = metadata.get("general.architecture")
    if declared:
        architectures.append(str(declared))
    architectures.extend(a for a in METADATA_ARCHITECTURES if a not in architectures)

    for arch in architectures:
        block_count = metadata.get(f"{arch}.block_count")
        context_length = metadata.get(f"{arch}.context_length")
        if block_count or context_length:
            return {
                "layer_count": int(block_count) if block_count else None,
                "context_length": int(context_length) if context_length else None,
            }
    return {"layer_count": None, "context_length": None}


class ModelRegistry:
    """Builds descriptors for the weight files in ``models_dir``."""

    def __init__(
        self,
        models_dir: Path,
        catalog,
        metadata_reader,
        context_calculator,
        settings,
        is_downloading: Optional[Callable[[str], bool]] = None,
    ):
        self.models_dir = Path(models_dir)
        self.catalog = catalog
        self.metadata_reader = metadata_reader
        self.context_calculator = context_calculator
        self.settings = settings
        self.is_downloading = is_downloading or (lambda filename: False)
        self._metadata_cache: Dict[str, Dict[str, Optional[int]]] = {}

    def model_path(self, filename: str) -> Path:
        return self.models_dir / filename

    async def get_local_models(self) -> List[ModelDescriptor]:
        if not self.models_dir.exists():
            return []

        remote_by_filename = await self._remote_index()
        descriptors = []
        for path in sorted(self.models_dir.glob(f"*{WEIGHT_EXTENSION}")):
            if not path.is_file():
                continue
            descriptors.append(await self._describe(path, remote_by_filename.get(path.name)))
        return descriptors

    async def resolve(self, id_or_name: str) -> ModelDescriptor:
        """Find a local model by id, then by name, then by filename."""
        models = await self.get_local_models()
        for matches in (
            lambda m: m.id == id_or_name,
            lambda m: m.name == id_or_name,
            lambda m: m.filename == id_or_name,
        ):
            for model in models:
                if matches(model):
                    return model
        raise ModelNotFoundError(id_or_name)

    async def _remote_index(self) -> Dict[str, RemoteModelInfo]:
        try:
            remote = await self.catalog.list_available_models()
        except Exception as e:
            logger.warning(f"Remote catalog unavailable, using local metadata only: {e}")
            return {}
        return {entry.filename: entry for entry in remote}

    async def _read_file_metadata(self, path: Path) -> Dict[str, Optional[int]]:
        key = f"{path}:{path.stat().st_mtime_ns}"
        if key not in self._metadata_cache:
            try:
                metadata = await self.metadata_reader.read_metadata(str(path))
                self._metadata_cache[key] = extract_gguf_fields(metadata)
            except Exception as e:
                logger.warning(f"Could not read GGUF metadata from {path.name}: {e}")
                return {"layer_count": None, "context_length": None}
        return self._metadata_cache[key]

    async def _describe(self, path: Path, remote: Optional[RemoteModelInfo]) -> ModelDescriptor:
        model_id = model_id_for_path(path)
        size = path.stat().st_size
        parsed = parse_model_filename(path.name)
        file_meta = await self._read_file_metadata(path)

        # remote catalog > file metadata > filename > default
        merged_context = (
            (remote.context_length if remote else None)
            or file_meta["context_length"]
            or parsed.context_length
            or resources.DEFAULT_CONTEXT_SIZE
        )
        max_context = (remote.max_context_length if remote else None) or file_meta["context_length"]

        settings = self.settings.get(model_id)
        requested = settings.context_size or merged_context
        effective = await self.context_calculator.calculate_safe_context_size(size, requested, path.name)
        if effective != settings.context_size:
            settings = settings.update(context_size=effective)
            await self.settings.set(model_id, settings)

        return ModelDescriptor(
            id=model_id,
            name=(remote.name if remote else None) or parsed.name,
            filename=path.name,
            path=str(path.resolve()),
            size=size,
            downloaded=True,
            downloading=self.is_downloading(path.name),
            context_length=effective,
            max_context_length=max_context,
            layer_count=file_meta["layer_count"],
            parameter_count=(remote.parameter_count if remote else None) or parsed.parameter_count,
            quantization=(remote.quantization if remote else None) or parsed.quantization,
            model_type=parsed.model_type,
            settings=settings,
        )
