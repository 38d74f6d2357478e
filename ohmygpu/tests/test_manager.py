"""
Model Manager Tests
===================

Exercises the load/swap/unload lifecycle and its locking with an injected
in-memory runtime, so no weights are involved.
"""

import json
import threading
import time

import pytest

from ohmygpu.config import Settings
from ohmygpu.errors import ConfigError, LoadError, ModelNotFound, NotLoaded, UnsupportedOperation
from ohmygpu.manager import SWAP_RETRIES, ModelManager
from ohmygpu.registry import ModelInfo, ModelRegistry, ModelType
from ohmygpu.runtime.base import Runtime
from ohmygpu.runtime.stream import TokenStream
from ohmygpu.types import (
    FINISH_STOP,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatToken,
    ImageGenRequest,
    RuntimeCapabilities,
    RuntimeStatus,
)


class FakeRuntime(Runtime):
    """Runtime that answers with the name of its model directory."""

    name = "fake"
    capabilities = RuntimeCapabilities(chat=True, completions=True, streaming=True)

    def __init__(self, load_delay=0.0):
        super().__init__()
        self.load_delay = load_delay
        self.loads = []
        self.unloads = 0
        self.gate = threading.Event()
        self.gate.set()

    def _load(self, config):
        time.sleep(self.load_delay)
        if config.model_path.name == "broken":
            raise RuntimeError("corrupt weights")
        self.loads.append(config.model_path.name)

    def _unload(self):
        self.unloads += 1

    def chat(self, request):
        self._require("chat")
        return ChatResponse(content=self.config.model_path.name, tokens_used=1, finish_reason=FINISH_STOP)

    def chat_stream(self, request):
        self._require("streaming")
        gate = self.gate
        content = self.config.model_path.name

        def producer(send, should_stop):
            gate.wait(timeout=10)
            send(ChatToken(content, finish_reason=FINISH_STOP))

        return TokenStream().start(producer)


class FakeImageRuntime(FakeRuntime):
    name = "fake-image"
    capabilities = RuntimeCapabilities(images=True)


class RecordingFactory:
    """Runtime factory that remembers every runtime it built."""

    def __init__(self, load_delay=0.0):
        self.load_delay = load_delay
        self.created = []

    def __call__(self, model_type):
        if model_type == ModelType.IMAGE_GENERATION:
            runtime = FakeImageRuntime(self.load_delay)
        elif model_type == ModelType.LLM:
            runtime = FakeRuntime(self.load_delay)
        else:
            raise ConfigError(f"No runtime for model type {model_type.value}")
        self.created.append(runtime)
        return runtime


def _registry(tmp_path):
    return ModelRegistry([
        ModelInfo("alpha", tmp_path / "alpha", ModelType.LLM),
        ModelInfo("beta", tmp_path / "beta", ModelType.LLM),
        ModelInfo("painter", tmp_path / "painter", ModelType.IMAGE_GENERATION),
        ModelInfo("broken", tmp_path / "broken", ModelType.LLM),
        ModelInfo("embedder", tmp_path / "embedder", ModelType.EMBEDDING),
    ])


def _request(text="hi"):
    return ChatRequest(messages=[ChatMessage("user", text)])


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def factory():
    return RecordingFactory()


@pytest.fixture
def manager(tmp_path, factory):
    return ModelManager(_registry(tmp_path), Settings(), runtime_factory=factory)


class TestInitialState:
    """Test a manager that has not loaded anything."""

    def test_empty(self, manager):
        assert manager.current_model() is None
        assert manager.status() == RuntimeStatus.UNLOADED
        assert manager.caps() == RuntimeCapabilities()

    def test_generation_without_model(self, manager):
        with pytest.raises(NotLoaded):
            manager.chat(_request())
        with pytest.raises(NotLoaded):
            manager.chat_stream(_request())
        with pytest.raises(NotLoaded):
            manager.generate_image(ImageGenRequest(prompt="x"))
        assert manager._lock.readers == 0

    def test_registry_read_from_settings(self, tmp_path):
        registry_file = tmp_path / "registry.json"
        registry_file.write_text(json.dumps({
            "models": {"alpha": {"path": str(tmp_path / "alpha"), "model_type": "LLM"}}
        }))
        settings = Settings()
        settings.models.registry_path = registry_file

        manager = ModelManager(settings=settings, runtime_factory=RecordingFactory())
        manager.ensure_loaded("alpha")
        assert manager.current_model() == "alpha"


class TestEnsureLoaded:
    """Test loading and swapping."""

    def test_load(self, manager, factory):
        manager.ensure_loaded("alpha")

        assert manager.current_model() == "alpha"
        assert manager.status() == RuntimeStatus.READY
        assert manager.caps().chat
        assert manager.chat(_request()).content == "alpha"
        assert factory.created[0].loads == ["alpha"]

    def test_already_loaded_is_noop(self, manager, factory):
        manager.ensure_loaded("alpha")
        manager.ensure_loaded("alpha")
        assert factory.created[0].loads == ["alpha"]
        assert len(factory.created) == 1

    def test_runtime_config_from_settings(self, tmp_path, factory):
        settings = Settings()
        settings.runtime.gpu_id = 1
        settings.runtime.vram_budget_mb = 512
        manager = ModelManager(_registry(tmp_path), settings, runtime_factory=factory)

        manager.ensure_loaded("alpha")

        config = factory.created[0].config
        assert config.model_path == tmp_path / "alpha"
        assert (config.gpu_id, config.vram_budget_mb) == (1, 512)

    def test_same_type_swap_reuses_runtime(self, manager, factory):
        manager.ensure_loaded("alpha")
        manager.ensure_loaded("beta")

        assert len(factory.created) == 1
        runtime = factory.created[0]
        assert runtime.loads == ["alpha", "beta"]
        assert runtime.unloads == 1
        assert manager.chat(_request()).content == "beta"

    def test_type_change_builds_new_runtime(self, manager, factory):
        manager.ensure_loaded("alpha")
        manager.ensure_loaded("painter")

        assert len(factory.created) == 2
        text_runtime, image_runtime = factory.created
        assert text_runtime.status() == RuntimeStatus.UNLOADED
        assert image_runtime.status() == RuntimeStatus.READY
        assert manager.current_model() == "painter"
        assert manager.caps().images and not manager.caps().chat

    def test_unknown_name_keeps_current_model(self, manager):
        manager.ensure_loaded("alpha")
        with pytest.raises(ModelNotFound):
            manager.ensure_loaded("gamma")

        assert manager.current_model() == "alpha"
        assert manager.status() == RuntimeStatus.READY
        assert manager.chat(_request()).content == "alpha"

    def test_unsupported_type_keeps_current_model(self, manager):
        manager.ensure_loaded("alpha")
        with pytest.raises(ConfigError):
            manager.ensure_loaded("embedder")
        assert manager.current_model() == "alpha"
        assert manager.status() == RuntimeStatus.READY

    def test_unsupported_type_with_default_factory(self, tmp_path):
        manager = ModelManager(_registry(tmp_path), Settings())
        with pytest.raises(ConfigError):
            manager.ensure_loaded("embedder")
        assert manager.current_model() is None

    def test_failed_load(self, manager, factory):
        manager.ensure_loaded("alpha")
        with pytest.raises(LoadError):
            manager.ensure_loaded("broken")

        assert manager.current_model() is None
        assert manager.status() == RuntimeStatus.ERROR
        with pytest.raises(NotLoaded):
            manager.chat(_request())

        # Recovers on the next successful load
        manager.ensure_loaded("beta")
        assert manager.status() == RuntimeStatus.READY
        assert manager.chat(_request()).content == "beta"

    def test_concurrent_loads_of_same_model(self, tmp_path):
        factory = RecordingFactory(load_delay=0.1)
        manager = ModelManager(_registry(tmp_path), Settings(), runtime_factory=factory)
        errors = []

        def load():
            try:
                manager.ensure_loaded("alpha")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=load) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert len(factory.created) == 1
        assert factory.created[0].loads == ["alpha"]


class TestUnload:
    """Test explicit unload."""

    def test_unload(self, manager, factory):
        manager.ensure_loaded("alpha")
        manager.unload()

        assert manager.current_model() is None
        assert manager.status() == RuntimeStatus.UNLOADED
        assert factory.created[0].unloads == 1
        with pytest.raises(NotLoaded):
            manager.chat(_request())

    def test_unload_when_empty(self, manager):
        manager.unload()
        assert manager.status() == RuntimeStatus.UNLOADED


class TestGeneration:
    """Test request routing through the active runtime."""

    def test_capability_checked(self, manager):
        manager.ensure_loaded("alpha")
        with pytest.raises(UnsupportedOperation):
            manager.generate_image(ImageGenRequest(prompt="x"))
        assert manager._lock.readers == 0

    def test_stream_holds_read_lock_until_done(self, manager):
        manager.ensure_loaded("alpha")
        runtime = manager._runtime
        runtime.gate.clear()

        stream = manager.chat_stream(_request())
        assert manager._lock.readers == 1

        runtime.gate.set()
        assert stream.collect() == ("alpha", FINISH_STOP)
        assert _wait_for(lambda: manager._lock.readers == 0)

    def test_swap_waits_for_inflight_stream(self, manager):
        manager.ensure_loaded("alpha")
        runtime = manager._runtime
        runtime.gate.clear()
        stream = manager.chat_stream(_request())

        swapper = threading.Thread(target=manager.ensure_loaded, args=("beta",))
        swapper.start()
        time.sleep(0.2)

        assert swapper.is_alive()
        assert manager.current_model() == "alpha"
        assert runtime.loads == ["alpha"]

        runtime.gate.set()
        assert stream.collect() == ("alpha", FINISH_STOP)
        swapper.join(timeout=5)

        assert not swapper.is_alive()
        assert manager.current_model() == "beta"
        assert manager.chat(_request()).content == "beta"

    def test_closed_stream_releases_lock(self, manager):
        manager.ensure_loaded("alpha")
        stream = manager.chat_stream(_request())
        stream.close()

        assert _wait_for(lambda: manager._lock.readers == 0)
        manager.ensure_loaded("beta")
        assert manager.current_model() == "beta"

    def test_capability_checked_with_model(self, manager):
        with pytest.raises(UnsupportedOperation):
            manager.generate_image(ImageGenRequest(prompt="x"), model="alpha")
        assert manager.current_model() == "alpha"
        assert manager._lock.readers == 0


class TestPinnedModel:
    """Test requests that name the model they must run on."""

    def test_loads_on_demand(self, manager):
        assert manager.chat(_request(), model="beta").content == "beta"
        assert manager.current_model() == "beta"
        assert manager._lock.readers == 0

    def test_unknown_model(self, manager):
        with pytest.raises(ModelNotFound):
            manager.chat(_request(), model="gamma")
        assert manager._lock.readers == 0

    def test_swap_between_load_and_run_is_retried(self, manager, monkeypatch):
        """Test a swap landing right after the load never serves the other model."""
        load = manager.ensure_loaded
        swapped = []

        def load_then_swap(name):
            load(name)
            if not swapped:
                # Another client switches models before this request runs
                swapped.append(name)
                load("beta")

        monkeypatch.setattr(manager, "ensure_loaded", load_then_swap)

        assert manager.chat(_request(), model="alpha").content == "alpha"
        assert swapped == ["alpha"]
        assert manager.current_model() == "alpha"
        assert manager._lock.readers == 0

    def test_stream_swap_is_retried(self, manager, monkeypatch):
        load = manager.ensure_loaded
        swapped = []

        def load_then_swap(name):
            load(name)
            if not swapped:
                swapped.append(name)
                load("beta")

        monkeypatch.setattr(manager, "ensure_loaded", load_then_swap)

        stream = manager.chat_stream(_request(), model="alpha")
        assert stream.collect() == ("alpha", FINISH_STOP)
        assert _wait_for(lambda: manager._lock.readers == 0)

    def test_gives_up_when_always_swapped(self, manager, monkeypatch):
        load = manager.ensure_loaded
        attempts = []

        def load_then_swap(name):
            load(name)
            attempts.append(name)
            load("beta")

        monkeypatch.setattr(manager, "ensure_loaded", load_then_swap)

        with pytest.raises(NotLoaded):
            manager.chat(_request(), model="alpha")
        assert len(attempts) == SWAP_RETRIES
        assert manager._lock.readers == 0


@pytest.mark.integration
class TestTinyModel:
    """Drive the default runtime factory with the tiny on-disk Qwen3 checkpoint."""

    def test_stream_matches_chat(self, tiny_text_model_dir):
        settings = Settings()
        settings.inference.use_gpu = False
        registry = ModelRegistry([ModelInfo("tiny", tiny_text_model_dir, ModelType.LLM)])
        manager = ModelManager(registry, settings)

        manager.ensure_loaded("tiny")
        assert manager.status() == RuntimeStatus.READY
        assert manager.caps().streaming

        request = ChatRequest(messages=[ChatMessage("user", "hello")], max_tokens=12, seed=42)
        response = manager.chat(request)
        text, finish_reason = manager.chat_stream(request).collect()

        assert text == response.content
        assert finish_reason == response.finish_reason
        assert response.tokens_used <= 12
        assert _wait_for(lambda: manager._lock.readers == 0)

    def test_named_request_through_default_factory(self, tiny_text_model_dir):
        settings = Settings()
        settings.inference.use_gpu = False
        registry = ModelRegistry([ModelInfo("tiny", tiny_text_model_dir, ModelType.LLM)])
        manager = ModelManager(registry, settings)

        request = ChatRequest(messages=[ChatMessage("user", "hi")], max_tokens=3, seed=1)
        response = manager.chat(request, model="tiny")

        assert manager.current_model() == "tiny"
        assert response.tokens_used <= 3
