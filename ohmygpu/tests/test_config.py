"""
Settings and Registry Tests
===========================
"""

import json
import logging

import pytest

from ohmygpu.config import Settings, default_base_dir
from ohmygpu.errors import ConfigError, ModelNotFound
from ohmygpu.logger import get_logger
from ohmygpu.registry import ModelInfo, ModelRegistry, ModelType


class TestSettings:
    """Test Settings loading and overrides."""

    def test_defaults(self):
        settings = Settings()
        assert settings.daemon.port == 11434
        assert settings.inference.max_tokens == 2048
        assert settings.inference.temperature == 0.7
        assert settings.diffusion.steps == 9
        assert settings.runtime.gpu_id == 0

    def test_from_dict(self):
        settings = Settings.from_dict({
            "daemon": {"port": 8080},
            "inference": {"temperature": 0.3, "bogus": 1},
        })
        assert settings.daemon.port == 8080
        assert settings.inference.temperature == 0.3
        assert settings.inference.max_tokens == 2048

    def test_section_must_be_object(self):
        with pytest.raises(ConfigError):
            Settings.from_dict({"daemon": 5})

    def test_from_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"runtime": {"vram_budget_mb": 8000}}))
        assert Settings.from_file(path).runtime.vram_budget_mb == 8000

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            Settings.from_file(path)

    def test_env_overrides(self):
        settings = Settings.from_env({
            "OHMYGPU_PORT": "9000",
            "OHMYGPU_TEMPERATURE": "0.25",
            "OHMYGPU_USE_GPU": "false",
            "OHMYGPU_VRAM_BUDGET_MB": "4096",
            "OHMYGPU_MODELS_DIR": "/srv/models",
        })
        assert settings.daemon.port == 9000
        assert settings.inference.temperature == 0.25
        assert settings.inference.use_gpu is False
        assert settings.runtime.vram_budget_mb == 4096
        assert str(settings.models.models_dir()) == "/srv/models"

    def test_invalid_env_value(self):
        with pytest.raises(ConfigError):
            Settings.from_env({"OHMYGPU_PORT": "eighty"})

    def test_load_layers_file_then_env(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"daemon": {"port": 1234, "host": "0.0.0.0"}}))
        monkeypatch.setenv("OHMYGPU_PORT", "4321")

        settings = Settings.load(path)
        assert settings.daemon.port == 4321
        assert settings.daemon.host == "0.0.0.0"

    def test_base_dir_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OHMYGPU_HOME", str(tmp_path))
        assert default_base_dir() == tmp_path
        assert Settings().models.registry_file() == tmp_path / "registry.json"
        assert Settings().models.models_dir() == tmp_path / "models"

    def test_to_dict(self):
        assert Settings().to_dict()["diffusion"]["guidance_scale"] == 5.0


class TestModelRegistry:
    """Test the name -> model lookup."""

    def test_resolve(self, tmp_path):
        registry = ModelRegistry([ModelInfo("a", tmp_path / "a", ModelType.LLM)])
        assert registry.resolve("a").path == tmp_path / "a"
        assert "a" in registry and len(registry) == 1
        with pytest.raises(ModelNotFound) as exc_info:
            registry.resolve("b")
        assert exc_info.value.name == "b"

    def test_from_file_mapping_layout(self, tmp_path):
        path = tmp_path / "registry.json"
        path.write_text(json.dumps({"models": {
            "llama": {"path": "/m/llama", "model_type": "LLM", "size_bytes": 10},
            "zimage": {"path": "/m/zimage", "model_type": "ImageGeneration"},
        }}))
        registry = ModelRegistry.from_file(path)

        assert registry.resolve("llama").model_type == ModelType.LLM
        assert registry.resolve("llama").size_bytes == 10
        assert registry.resolve("zimage").model_type == ModelType.IMAGE_GENERATION

    def test_from_file_list_layout(self, tmp_path):
        path = tmp_path / "registry.json"
        path.write_text(json.dumps({"models": [{"name": "x", "path": "/m/x", "model_type": "Embedding"}]}))
        assert ModelRegistry.from_file(path).resolve("x").model_type == ModelType.EMBEDDING

    def test_missing_file_is_empty(self, tmp_path):
        assert len(ModelRegistry.from_file(tmp_path / "none.json")) == 0

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "registry.json"
        path.write_text("[")
        with pytest.raises(ConfigError):
            ModelRegistry.from_file(path)

    def test_entry_without_path(self, tmp_path):
        path = tmp_path / "registry.json"
        path.write_text(json.dumps({"models": [{"name": "x"}]}))
        with pytest.raises(ConfigError):
            ModelRegistry.from_file(path)

    def test_info_round_trip(self, tmp_path):
        info = ModelInfo("a", tmp_path / "a", ModelType.IMAGE_GENERATION, size_bytes=5, files=["x.safetensors"])
        assert ModelInfo.from_dict(info.to_dict()) == info

    def test_runtime_config(self, tmp_path):
        registry = ModelRegistry([ModelInfo("a", tmp_path / "a", ModelType.LLM)])
        config = registry.runtime_config("a", gpu_id=1)
        assert config.model_path == tmp_path / "a"
        assert config.gpu_id == 1


class TestModelType:
    """Test model type parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("LLM", ModelType.LLM),
        ("ImageGeneration", ModelType.IMAGE_GENERATION),
        ("IMAGE_GENERATION", ModelType.IMAGE_GENERATION),
        ("something-else", ModelType.UNKNOWN),
    ])
    def test_parse(self, value, expected):
        assert ModelType.parse(value) == expected

    @pytest.mark.parametrize("tag,expected", [
        ("text-generation", ModelType.LLM),
        ("text-to-image", ModelType.IMAGE_GENERATION),
        ("automatic-speech-recognition", ModelType.AUDIO_TRANSCRIPTION),
        (None, ModelType.UNKNOWN),
    ])
    def test_pipeline_tag(self, tag, expected):
        assert ModelType.from_pipeline_tag(tag) == expected


class TestLogger:
    """Test logger naming."""

    def test_namespaced(self):
        assert get_logger("ohmygpu.runtime").name == "ohmygpu.runtime"
        assert get_logger("plugin").name == "ohmygpu.plugin"
        assert isinstance(get_logger("x"), logging.Logger)
