"""Runtime construction by declared model type."""

from typing import Callable, Dict, Optional

from ohmygpu.config import InferenceSettings
from ohmygpu.errors import ConfigError
from ohmygpu.registry import ModelType
from ohmygpu.runtime.base import Runtime
from ohmygpu.runtime.diffusion import DiffusionRuntime
from ohmygpu.runtime.text import TextRuntime

RuntimeFactory = Callable[[ModelType], Runtime]

RUNTIME_REGISTRY: Dict[ModelType, type] = {
    ModelType.LLM: TextRuntime,
    ModelType.IMAGE_GENERATION: DiffusionRuntime,
}


def runtime_class(model_type: ModelType) -> type:
    cls = RUNTIME_REGISTRY.get(model_type)
    if cls is None:
        raise ConfigError(f"No runtime for model type {model_type.value}")
    return cls


def create_runtime(model_type: ModelType, settings: Optional[InferenceSettings] = None) -> Runtime:
    """Instantiate the runtime variant serving ``model_type``.

    Raises:
        ConfigError: The model type has no runtime
    """
    settings = settings or InferenceSettings()
    cls = runtime_class(model_type)
    if cls is TextRuntime:
        return TextRuntime(use_gpu=settings.use_gpu, stream_capacity=settings.stream_buffer)
    return cls(use_gpu=settings.use_gpu)
