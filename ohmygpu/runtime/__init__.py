"""Runtimes and the generation machinery behind them."""

from ohmygpu.runtime.base import Runtime
from ohmygpu.runtime.diffusion import DiffusionFamily, DiffusionRuntime, detect_diffusion_family
from ohmygpu.runtime.engine import (
    GenerationConfig,
    GenerationResult,
    GenerationSession,
    GenerationState,
    TextGenerationEngine,
)
from ohmygpu.runtime.factory import RUNTIME_REGISTRY, create_runtime, runtime_class
from ohmygpu.runtime.pipeline import DenoisingSession, ZImagePipeline
from ohmygpu.runtime.sampler import Sampler
from ohmygpu.runtime.scheduler import FlowMatchEulerDiscreteScheduler, SchedulerConfig, calculate_shift
from ohmygpu.runtime.stream import TokenStream
from ohmygpu.runtime.text import TextRuntime
from ohmygpu.runtime.tokenizer import Tokenizer

__all__ = [
    "Runtime",
    "TextRuntime",
    "DiffusionRuntime",
    "DiffusionFamily",
    "detect_diffusion_family",
    "create_runtime",
    "runtime_class",
    "RUNTIME_REGISTRY",
    "TextGenerationEngine",
    "GenerationConfig",
    "GenerationResult",
    "GenerationSession",
    "GenerationState",
    "Sampler",
    "TokenStream",
    "Tokenizer",
    "ZImagePipeline",
    "DenoisingSession",
    "FlowMatchEulerDiscreteScheduler",
    "SchedulerConfig",
    "calculate_shift",
]
