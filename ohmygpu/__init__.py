"""ohmygpu: local model-inference core.

Runtimes for text generation (Llama-style and Phi decoders) and image
generation (Z-Image), a lifecycle manager that swaps them safely under
concurrent requests, and OpenAI/Ollama payload adapters.
"""

__version__ = "0.1.0"

from ohmygpu.config import Settings
from ohmygpu.errors import (
    BackendError,
    ConfigError,
    GenerationError,
    InvalidDimensions,
    LoadError,
    ModelNotFound,
    NotLoaded,
    OhMyGPUError,
    TokenizationError,
    UnsupportedOperation,
)
from ohmygpu.logger import get_logger, setup_logging
from ohmygpu.manager import ModelManager
from ohmygpu.registry import ModelInfo, ModelRegistry, ModelType
from ohmygpu.types import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatToken,
    ImageGenRequest,
    ImageGenResponse,
    RuntimeCapabilities,
    RuntimeConfig,
    RuntimeStatus,
)

__all__ = [
    "__version__",
    "ModelManager",
    "ModelRegistry",
    "ModelInfo",
    "ModelType",
    "Settings",
    "setup_logging",
    "get_logger",
    # Types
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ChatToken",
    "ImageGenRequest",
    "ImageGenResponse",
    "RuntimeCapabilities",
    "RuntimeConfig",
    "RuntimeStatus",
    # Errors
    "OhMyGPUError",
    "LoadError",
    "ConfigError",
    "ModelNotFound",
    "GenerationError",
    "NotLoaded",
    "UnsupportedOperation",
    "TokenizationError",
    "BackendError",
    "InvalidDimensions",
]
