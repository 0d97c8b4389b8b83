"""
Resource Calculator

Memory-footprint estimates used to size context windows, GPU offload and
batch sizes for a model on the current machine. Everything here is pure;
``context.ContextCalculator`` feeds it live hardware readings.
"""

import math
from dataclasses import dataclass, field, replace
from typing import List, Optional

from loguru import logger

from .types import LoadingSettings, ModelDescriptor, SystemInfo

GIB = 1024 ** 3
MIB = 1024 ** 2

MIN_CONTEXT_SIZE = 512
DEFAULT_CONTEXT_SIZE = 4096
DEFAULT_BATCH_SIZE = 512
DEFAULT_TEMPERATURE = 0.7
VRAM_BUDGET_FRACTION = 0.8
INPUT_BATCH_SIZE = 512
CPU_MAX_BATCH_SIZE = 512
SYSTEM_RESERVE_GB = 1.0
VRAM_BATCH_SHARE = 0.3
FALLBACK_GPU_LAYERS = 0


@dataclass(frozen=True)
class ArchitectureEstimate:
    """Transformer shape used when the real one is not known."""
    hidden_size: int = 4096
    num_hidden_layers: int = 48
    num_attention_heads: int = 32
    num_key_value_heads: int = 8


DEFAULT_ARCHITECTURE = ArchitectureEstimate()


def kv_cache_bytes(context: int, arch: ArchitectureEstimate = DEFAULT_ARCHITECTURE) -> float:
    """Key and value tensors for every layer and token, 16-bit."""
    n_gqa = arch.num_attention_heads / arch.num_key_value_heads
    n_embd_gqa = arch.hidden_size / n_gqa
    return 2 * n_embd_gqa * arch.num_hidden_layers * context * 2


def input_buffer_bytes(context: int, hidden_size: int, batch_size: int = INPUT_BATCH_SIZE) -> float:
    # tokens + embeddings + positions + KQ mask + K shift + sum
    return batch_size + hidden_size * batch_size + batch_size + context * batch_size + context + batch_size


def compute_buffer_bytes(context: int, num_attention_heads: int) -> float:
    return ((context / 1024) * 2 + 0.75) * num_attention_heads * MIB


def context_memory(context: int, arch: ArchitectureEstimate = DEFAULT_ARCHITECTURE) -> float:
    """Estimated bytes needed for a context window of ``context`` tokens.

    Every term is linear in ``context`` with a positive slope, so the result
    is non-decreasing and safe to binary search over.
    """
    return (
        kv_cache_bytes(context, arch)
        + input_buffer_bytes(context, arch.hidden_size)
        + compute_buffer_bytes(context, arch.num_attention_heads)
    )


def binary_search_context_size(
    budget_bytes: float,
    max_context: int,
    arch: ArchitectureEstimate = DEFAULT_ARCHITECTURE,
) -> int:
    """Largest context in ``[512, max_context]`` that fits in ``budget_bytes``.

    Returns the 512 floor when nothing fits, and never more than ``max_context``.
    """
    low, high = MIN_CONTEXT_SIZE, max_context
    best = min(MIN_CONTEXT_SIZE, max_context)
    while low <= high:
        mid = (low + high) // 2
        if context_memory(mid, arch) <= budget_bytes:
            best = mid
            low = mid + 1
        else:
            high = mid - 1
    return best


def estimate_layer_count(size_bytes: int) -> int:
    return max(32, min(80, math.floor(size_bytes / GIB * 8)))


# Delegated optimal-configuration routine


@dataclass
class CpuInfo:
    core_count: int
    efficiency_core_count: int = 0


@dataclass
class GpuInfo:
    id: str
    library: str
    total_memory: int
    free_memory: int
    minimum_memory: int = GIB
    driver_major: int = 12
    driver_minor: int = 0
    name: str = "Unknown GPU"


@dataclass
class ModelShape:
    block_count: int
    train_ctx: int
    head_count_max: int = 32
    head_count_kv_min: int = 8
    model_size: Optional[int] = None


@dataclass
class CalculatorOptions:
    num_ctx: int = DEFAULT_CONTEXT_SIZE
    num_batch: int = DEFAULT_BATCH_SIZE
    num_gpu: int = -1
    num_thread: int = 0
    temperature: float = 0.8


@dataclass
class MemoryEstimate:
    layers: int
    graph: int
    vram_size: int
    total_size: int
    tensor_split: str = ""
    gpu_sizes: List[int] = field(default_factory=list)
    fully_loaded: bool = False


@dataclass
class OptimalConfig:
    options: CalculatorOptions
    estimate: MemoryEstimate


class ResourceCalculator:
    """Estimates how many layers fit on the available GPUs."""

    HEAD_DIM = 128
    GPU_OVERHEAD = 0

    @staticmethod
    def optimal_thread_count(cpus: List[CpuInfo]) -> int:
        """Performance cores only."""
        return sum(cpu.core_count - cpu.efficiency_core_count for cpu in cpus)

    @staticmethod
    def validate_context_size(requested_ctx: int, train_ctx: int, num_parallel: int = 1) -> int:
        if train_ctx > 0 and requested_ctx / num_parallel > train_ctx:
            logger.warning(f"Requested context size {requested_ctx} too large for model (train_ctx: {train_ctx})")
            return train_ctx * num_parallel
        return requested_ctx

    @classmethod
    def kv_cache_size(cls, num_ctx: int, shape: ModelShape, num_parallel: int = 1) -> int:
        return 2 * shape.block_count * shape.head_count_kv_min * cls.HEAD_DIM * num_ctx * num_parallel * 2

    @staticmethod
    def graph_size(shape: ModelShape, num_ctx: int, full_offload: bool) -> int:
        base = num_ctx * 1024
        if full_offload:
            return base * 2
        gqa = shape.head_count_max / (shape.head_count_kv_min or 1)
        return math.floor(base * gqa / 6)

    @classmethod
    def estimate_gpu_layers(
        cls,
        gpus: List[GpuInfo],
        shape: ModelShape,
        options: CalculatorOptions,
        num_parallel: int = 1,
    ) -> MemoryEstimate:
        total_model_size = shape.model_size or shape.block_count * 300 * MIB
        layer_size = total_model_size // shape.block_count
        kv_cache = cls.kv_cache_size(options.num_ctx, shape, num_parallel)
        graph_partial = cls.graph_size(shape, options.num_ctx, False)
        graph_full = cls.graph_size(shape, options.num_ctx, True)
        graph_max = max(graph_partial, graph_full)

        viable = [
            gpu for gpu in gpus
            if gpu.free_memory >= cls.GPU_OVERHEAD + gpu.minimum_memory + layer_size * 2 + kv_cache + graph_max
        ]
        if not viable:
            return MemoryEstimate(
                layers=0, graph=0, vram_size=0, total_size=layer_size * shape.block_count
            )

        allocations = [gpu.minimum_memory + layer_size for gpu in viable]
        layer_counts = [0] * len(viable)
        layer_count = 0

        for _ in range(shape.block_count):
            if 0 <= options.num_gpu <= layer_count:
                break

            best_gpu, best_available = -1, 0
            for index, gpu in enumerate(viable):
                used = allocations[index] + graph_max
                # the first layer on a GPU also brings the KV cache with it
                kv_here = kv_cache if layer_counts[index] == 0 else 0
                available = gpu.free_memory - cls.GPU_OVERHEAD - used - kv_here
                if available >= layer_size and available > best_available:
                    best_gpu, best_available = index, available

            if best_gpu < 0:
                break
            allocations[best_gpu] += layer_size
            layer_counts[best_gpu] += 1
            layer_count += 1

        fully_loaded = layer_count >= shape.block_count
        graph = graph_full if fully_loaded else graph_partial
        for index, count in enumerate(layer_counts):
            if count > 0:
                allocations[index] += graph + kv_cache

        return MemoryEstimate(
            layers=layer_count,
            graph=graph,
            vram_size=sum(allocations),
            total_size=layer_size * shape.block_count,
            tensor_split=",".join(str(c) for c in layer_counts) if len(viable) > 1 else "",
            gpu_sizes=allocations,
            fully_loaded=fully_loaded,
        )

    @classmethod
    def calculate_optimal_config(
        cls,
        cpus: List[CpuInfo],
        gpus: List[GpuInfo],
        shape: ModelShape,
        **overrides,
    ) -> OptimalConfig:
        options = replace(CalculatorOptions(), **overrides)
        if options.num_thread == 0:
            options.num_thread = cls.optimal_thread_count(cpus)
        options.num_ctx = cls.validate_context_size(options.num_ctx, shape.train_ctx)

        estimate = cls.estimate_gpu_layers(gpus, shape, options)
        if options.num_gpu < 0:
            options.num_gpu = estimate.layers
        return OptimalConfig(options=options, estimate=estimate)


GPU_LIBRARIES = {"NVIDIA": "cuda", "AMD": "rocm", "Apple": "metal"}


def topology_from_system_info(system_info: SystemInfo):
    """Normalise a system snapshot into calculator CPU and GPU lists."""
    cpus = [CpuInfo(core_count=system_info.cpu_threads)]
    gpus = []
    if system_info.has_gpu and system_info.vram_state.total > 0:
        gpus.append(GpuInfo(
            id="0",
            library=GPU_LIBRARIES.get(system_info.gpu_type or "", "cpu"),
            total_memory=system_info.vram_state.total,
            free_memory=system_info.vram_state.free,
            name=system_info.gpu_type or "Unknown GPU",
        ))
    return cpus, gpus


def model_shape(descriptor: ModelDescriptor) -> ModelShape:
    return ModelShape(
        block_count=descriptor.layer_count or estimate_layer_count(descriptor.size),
        train_ctx=descriptor.context_length or descriptor.max_context_length or DEFAULT_CONTEXT_SIZE,
        model_size=descriptor.size,
    )


def cpu_batch_size(size_bytes: int, context_size: int, system_info: SystemInfo) -> int:
    """Batch size bounded by RAM headroom for CPU execution."""
    model_size_gb = size_bytes / GIB
    estimated_params = model_size_gb * 0.5
    bytes_per_param = 2
    context_memory_gb = context_size * estimated_params * bytes_per_param / GIB

    available = system_info.free_ram / GIB - model_size_gb - context_memory_gb
    if system_info.has_gpu:
        available += system_info.vram_state.free / GIB * VRAM_BATCH_SHARE
    available = max(0.0, available - SYSTEM_RESERVE_GB)

    memory_per_token_mb = estimated_params * bytes_per_param / MIB
    if memory_per_token_mb <= 0:
        return CPU_MAX_BATCH_SIZE
    max_batch = math.floor(available * 1024 / memory_per_token_mb)
    batch = max(1, min(max_batch, CPU_MAX_BATCH_SIZE))
    logger.debug(
        f"CPU batch size: model {model_size_gb:.1f}GB, context {context_size}, "
        f"available {available:.1f}GB -> {batch}"
    )
    return batch


FALLBACK_BATCH_TIERS = (
    (15000, 1024, 2048),
    (8000, 2048, 4096),
    (4000, 4096, 8192),
    (0, 8192, 16384),
)


def fallback_batch_size(size_bytes: int, context_size: int) -> int:
    size_mb = size_bytes / MIB
    for threshold, large_context_batch, batch in FALLBACK_BATCH_TIERS:
        if size_mb > threshold or threshold == 0:
            return large_context_batch if context_size > 8192 else batch
    return FALLBACK_BATCH_TIERS[-1][2]


def merge_effective_settings(user: LoadingSettings, defaults: LoadingSettings) -> LoadingSettings:
    """User values win, except ``gpu_layers == -1`` which asks for the computed default."""
    gpu_layers = user.gpu_layers
    if gpu_layers is None or gpu_layers == -1:
        gpu_layers = defaults.gpu_layers
    return LoadingSettings(
        gpu_layers=gpu_layers,
        context_size=user.context_size if user.context_size is not None else defaults.context_size,
        batch_size=user.batch_size if user.batch_size is not None else defaults.batch_size,
        threads=user.threads if user.threads is not None else defaults.threads,
        temperature=user.temperature if user.temperature is not None else defaults.temperature,
    )
