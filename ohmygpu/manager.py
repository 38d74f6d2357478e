"""Model lifecycle manager.

Holds at most one Runtime and the name of the model it serves. Generation
calls share a read lock for their whole duration; switching models takes
the write lock, so a swap waits for in-flight requests (streams included)
and new requests wait for the swap.

Usage:
    manager = ModelManager(registry, settings)
    manager.ensure_loaded("llama-3.2-1b")
    response = manager.chat(ChatRequest(messages=[ChatMessage("user", "Hi")]))

    # Load-and-run for protocol handlers; never served by another model
    response = manager.chat(request, model="llama-3.2-1b")
"""

from typing import Callable, Optional

from ohmygpu.config import Settings
from ohmygpu.errors import NotLoaded
from ohmygpu.logger import get_logger
from ohmygpu.registry import ModelInfo, ModelRegistry, ModelType
from ohmygpu.runtime.base import Runtime
from ohmygpu.runtime.factory import create_runtime
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
from ohmygpu.utils import RWLock

logger = get_logger(__name__)

# Attempts to pin a requested model before giving up
SWAP_RETRIES = 3


class ModelManager:
    """Serializes model swaps against generation requests.

    Args:
        registry: Name -> model lookup (read from the settings' registry file if None)
        settings: Daemon settings (defaults if None)
        runtime_factory: ``ModelType -> Runtime`` constructor (``create_runtime`` if None)
    """

    def __init__(
        self,
        registry: Optional[ModelRegistry] = None,
        settings: Optional[Settings] = None,
        runtime_factory: Optional[Callable[[ModelType], Runtime]] = None,
    ):
        self.settings = settings or Settings()
        if registry is None:
            registry = ModelRegistry.from_file(self.settings.models.registry_file())
        self.registry = registry
        self._factory = runtime_factory or (lambda model_type: create_runtime(model_type, self.settings.inference))
        self._lock = RWLock()
        self._runtime: Optional[Runtime] = None
        self._runtime_type: Optional[ModelType] = None
        self._current_name: Optional[str] = None

    def _is_serving(self, name: str) -> bool:
        return (
            self._current_name == name
            and self._runtime is not None
            and self._runtime.status() == RuntimeStatus.READY
        )

    def _runtime_config(self, info: ModelInfo) -> RuntimeConfig:
        runtime = self.settings.runtime
        return RuntimeConfig(
            model_path=info.path,
            gpu_id=runtime.gpu_id,
            vram_budget_mb=runtime.vram_budget_mb,
            cpu_threads=runtime.cpu_threads,
        )

    def ensure_loaded(self, name: str) -> None:
        """Make ``name`` the Ready model, swapping out the current one if needed.

        Raises:
            ModelNotFound: ``name`` is not registered (the current model stays loaded)
            LoadError: Loading failed; no model is selected afterwards
        """
        with self._lock.read_locked():
            if self._is_serving(name):
                return

        with self._lock.write_locked():
            # Another caller may have loaded it while we waited
            if self._is_serving(name):
                return

            info = self.registry.resolve(name)
            config = self._runtime_config(info)

            if self._runtime is not None and self._runtime_type == info.model_type:
                runtime = self._runtime
            else:
                runtime = self._factory(info.model_type)

            if self._runtime is not None and self._runtime.status() == RuntimeStatus.READY:
                logger.info(f"Unloading model {self._current_name}")
                self._runtime.unload()
            self._current_name = None
            self._runtime = runtime
            self._runtime_type = info.model_type

            logger.info(f"Loading model {name} ({info.model_type.value}) from {info.path}")
            runtime.load(config)
            self._current_name = name
            logger.info(f"Model {name} ready")

    def unload(self) -> None:
        with self._lock.write_locked():
            if self._runtime is not None:
                logger.info(f"Unloading model {self._current_name}")
                self._runtime.unload()
            self._current_name = None

    def _active_runtime(self) -> Runtime:
        if self._runtime is None:
            raise NotLoaded()
        return self._runtime

    def _acquire_runtime(self, model: Optional[str]) -> Runtime:
        """Take a read hold on the active runtime and return it.

        With ``model`` given, the model is loaded first and the hold is kept
        only once ``model`` is confirmed to still be the one serving; a swap
        that lands between the load and the hold is retried.

        Raises:
            LoadError: ``model`` could not be loaded
            NotLoaded: No model is Ready, or ``model`` kept being swapped out
        """
        for _ in range(SWAP_RETRIES):
            if model is not None:
                self.ensure_loaded(model)
            self._lock.acquire_read()
            try:
                if model is None or self._is_serving(model):
                    return self._active_runtime()
            except BaseException:
                self._lock.release_read()
                raise
            self._lock.release_read()
            logger.info(f"Model {model} was swapped out before the request started, retrying")
        raise NotLoaded(f"Model {model} was swapped out before the request could start")

    def chat(self, request: ChatRequest, model: Optional[str] = None) -> ChatResponse:
        """Run a chat request; with ``model``, on that model only."""
        runtime = self._acquire_runtime(model)
        try:
            return runtime.chat(request)
        finally:
            self._lock.release_read()

    def chat_stream(self, request: ChatRequest, model: Optional[str] = None) -> TokenStream:
        """Start a streamed chat.

        The read hold outlives this call and is released when the stream's
        producer exits.
        """
        runtime = self._acquire_runtime(model)
        try:
            stream = runtime.chat_stream(request)
        except BaseException:
            self._lock.release_read()
            raise
        stream.add_done_callback(self._lock.release_read)
        return stream

    def generate_image(self, request: ImageGenRequest, model: Optional[str] = None) -> ImageGenResponse:
        runtime = self._acquire_runtime(model)
        try:
            return runtime.generate_image(request)
        finally:
            self._lock.release_read()

    def status(self) -> RuntimeStatus:
        runtime = self._runtime
        return runtime.status() if runtime is not None else RuntimeStatus.UNLOADED

    def caps(self) -> RuntimeCapabilities:
        runtime = self._runtime
        return runtime.caps() if runtime is not None else RuntimeCapabilities()

    def current_model(self) -> Optional[str]:
        return self._current_name
