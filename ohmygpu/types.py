"""Request, response and status types shared by every runtime and adapter."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from PIL import Image

# Finish reasons reported on responses and on the last streamed token
FINISH_STOP = "stop"
FINISH_LENGTH = "length"

DEFAULT_SEED = 42


@dataclass(frozen=True)
class RuntimeCapabilities:
    """Fixed set of operations a runtime class supports."""
    chat: bool = False
    completions: bool = False
    embeddings: bool = False
    images: bool = False
    audio: bool = False
    streaming: bool = False


class RuntimeStatus(Enum):
    """Lifecycle status of a runtime."""
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class RuntimeConfig:
    """Where and how to load a model.

    Args:
        model_path: Model directory
        gpu_id: Device ordinal to use (None picks the default device)
        vram_budget_mb: Refuse to load weights larger than this
        cpu_threads: Intra-op thread count for CPU inference
    """
    model_path: Path
    gpu_id: Optional[int] = None
    vram_budget_mb: Optional[int] = None
    cpu_threads: Optional[int] = None

    def __post_init__(self):
        # Accept plain strings but always store a Path
        object.__setattr__(self, "model_path", Path(self.model_path))


@dataclass
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRequest:
    """A chat completion request.

    Attributes:
        messages: Conversation, oldest first
        max_tokens: Upper bound on generated tokens
        temperature: Sampling temperature (floored at 0.001 by the sampler)
        stream: Whether the caller wants incremental tokens
        top_p: Nucleus mass kept when sampling (1.0 disables the cut)
        seed: Sampler seed; None uses the fixed default seed
    """
    messages: List[ChatMessage]
    max_tokens: int = 2048
    temperature: float = 0.7
    stream: bool = False
    top_p: float = 0.9
    seed: Optional[int] = None


@dataclass
class ChatResponse:
    content: str
    tokens_used: int
    finish_reason: str


@dataclass
class ChatToken:
    """One streamed piece of output.

    ``content`` is the text delta since the previous token; only the last
    token of a stream carries a ``finish_reason``.
    """
    content: str
    finish_reason: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.finish_reason is not None


@dataclass
class ImageGenRequest:
    prompt: str
    negative_prompt: Optional[str] = None
    width: int = 1024
    height: int = 1024
    steps: int = 9
    guidance_scale: float = 5.0
    seed: Optional[int] = None


@dataclass
class ImageGenResponse:
    """Generated image as packed 8-bit RGB.

    ``pixels`` holds ``height`` rows of ``width`` pixels, each pixel three
    bytes (R, G, B), rows top to bottom.
    """
    pixels: bytes = field(repr=False)
    width: int
    height: int

    def __post_init__(self):
        expected = self.width * self.height * 3
        if len(self.pixels) != expected:
            raise ValueError(
                f"Pixel buffer has {len(self.pixels)} bytes, expected {expected} "
                f"for {self.width}x{self.height} RGB"
            )

    def to_image(self) -> Image.Image:
        return Image.frombytes("RGB", (self.width, self.height), bytes(self.pixels))

    def save(self, path: Union[str, Path], format: Optional[str] = None) -> Path:
        """Write the image to disk (format inferred from the suffix by default)."""
        path = Path(path)
        self.to_image().save(path, format=format)
        return path
