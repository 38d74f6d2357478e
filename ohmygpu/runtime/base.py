"""Runtime contract.

A Runtime owns one loaded model and exposes the operations its class
supports. Status transitions:

    UNLOADED | ERROR -> LOADING -> READY | ERROR
    READY -> UNLOADED          (explicit unload only)

Subclasses implement ``_load``/``_unload`` and override the operations in
their capability set; the base class does the bookkeeping.
"""

from abc import ABC, abstractmethod

from ohmygpu.errors import LoadError, NotLoaded, UnsupportedOperation
from ohmygpu.logger import get_logger
from ohmygpu.runtime.stream import TokenStream
from ohmygpu.types import (
    ChatRequest,
    ChatResponse,
    ImageGenRequest,
    ImageGenResponse,
    RuntimeCapabilities,
    RuntimeConfig,
    RuntimeStatus,
)

logger = get_logger(__name__)


class Runtime(ABC):
    """Base class for model runtimes."""

    name: str = "base"
    capabilities: RuntimeCapabilities = RuntimeCapabilities()

    def __init__(self):
        self._status = RuntimeStatus.UNLOADED
        self.config = None

    def caps(self) -> RuntimeCapabilities:
        return self.capabilities

    def status(self) -> RuntimeStatus:
        return self._status

    @property
    def is_ready(self) -> bool:
        return self._status == RuntimeStatus.READY

    def load(self, config: RuntimeConfig) -> None:
        """Load the model described by ``config``.

        A Ready runtime is unloaded first. On failure the status is ERROR
        and a LoadError (chained to the cause) is raised.
        """
        if self._status == RuntimeStatus.READY:
            self.unload()

        logger.info(f"[{self.name}] Loading {config.model_path}")
        self._status = RuntimeStatus.LOADING
        try:
            self._load(config)
        except LoadError as e:
            self._fail(e)
            raise
        except Exception as e:
            self._fail(e)
            raise LoadError(f"Failed to load {config.model_path}: {e}") from e
        self.config = config
        self._status = RuntimeStatus.READY
        logger.info(f"[{self.name}] Ready: {config.model_path}")

    def _fail(self, error: BaseException) -> None:
        logger.error(f"[{self.name}] Load failed: {error}")
        try:
            self._unload()
        finally:
            self._status = RuntimeStatus.ERROR

    def unload(self) -> None:
        """Drop the model and release device memory. No-op when unloaded."""
        if self._status == RuntimeStatus.UNLOADED:
            return
        logger.info(f"[{self.name}] Unloading")
        self._unload()
        self.config = None
        self._status = RuntimeStatus.UNLOADED

    @abstractmethod
    def _load(self, config: RuntimeConfig) -> None:
        ...

    @abstractmethod
    def _unload(self) -> None:
        ...

    def _require(self, capability: str) -> None:
        if not getattr(self.capabilities, capability):
            raise UnsupportedOperation(f"{self.name} runtime does not support {capability}")
        if self._status != RuntimeStatus.READY:
            raise NotLoaded()

    def chat(self, request: ChatRequest) -> ChatResponse:
        self._require("chat")
        raise NotImplementedError

    def chat_stream(self, request: ChatRequest) -> TokenStream:
        self._require("streaming")
        raise NotImplementedError

    def generate_image(self, request: ImageGenRequest) -> ImageGenResponse:
        self._require("images")
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self._status.value})"
