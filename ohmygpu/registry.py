"""Model registry lookup.

Maps a model name to its on-disk location and declared type. The registry
file is written by the download tooling; here it is only read, although
entries can be added in memory (tests, embedded use).
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ohmygpu.errors import ConfigError, ModelNotFound
from ohmygpu.logger import get_logger
from ohmygpu.types import RuntimeConfig

logger = get_logger(__name__)


class ModelType(Enum):
    LLM = "LLM"
    EMBEDDING = "Embedding"
    IMAGE_GENERATION = "ImageGeneration"
    IMAGE_CLASSIFICATION = "ImageClassification"
    AUDIO_TRANSCRIPTION = "AudioTranscription"
    AUDIO_GENERATION = "AudioGeneration"
    UNKNOWN = "Unknown"

    @classmethod
    def from_pipeline_tag(cls, tag: Optional[str]) -> "ModelType":
        """Map a Hugging Face ``pipeline_tag`` to a model type."""
        return _PIPELINE_TAGS.get(tag or "", cls.UNKNOWN)

    @classmethod
    def parse(cls, value: Union[str, "ModelType"]) -> "ModelType":
        if isinstance(value, cls):
            return value
        for member in cls:
            if value in (member.value, member.name):
                return member
        return cls.UNKNOWN


_PIPELINE_TAGS = {
    "text-generation": ModelType.LLM,
    "text2text-generation": ModelType.LLM,
    "feature-extraction": ModelType.EMBEDDING,
    "sentence-similarity": ModelType.EMBEDDING,
    "text-to-image": ModelType.IMAGE_GENERATION,
    "image-to-image": ModelType.IMAGE_GENERATION,
    "image-classification": ModelType.IMAGE_CLASSIFICATION,
    "object-detection": ModelType.IMAGE_CLASSIFICATION,
    "automatic-speech-recognition": ModelType.AUDIO_TRANSCRIPTION,
    "text-to-audio": ModelType.AUDIO_GENERATION,
    "text-to-speech": ModelType.AUDIO_GENERATION,
}


@dataclass
class ModelInfo:
    """Registry entry for one downloaded model."""
    name: str
    path: Path
    model_type: ModelType = ModelType.UNKNOWN
    source: Dict[str, Any] = field(default_factory=lambda: {"type": "local"})
    size_bytes: int = 0
    files: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelInfo":
        try:
            name = data["name"]
            path = Path(data["path"])
        except KeyError as e:
            raise ConfigError(f"Registry entry is missing {e}") from e
        return cls(
            name=name,
            path=path,
            model_type=ModelType.parse(data.get("model_type", "Unknown")),
            source=data.get("source") or {"type": "local"},
            size_bytes=int(data.get("size_bytes", 0)),
            files=list(data.get("files", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "model_type": self.model_type.value,
            "source": self.source,
            "size_bytes": self.size_bytes,
            "files": self.files,
        }


class ModelRegistry:
    """Name -> ModelInfo lookup.

    Args:
        models: Initial entries
        path: Registry file the entries came from (informational)
    """

    def __init__(self, models: Optional[List[ModelInfo]] = None, path: Optional[Path] = None):
        self.path = path
        self._models: Dict[str, ModelInfo] = {}
        for info in models or []:
            self.add(info)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ModelRegistry":
        """Read a registry JSON file (``{"models": {name: entry}}``).

        A missing file yields an empty registry.
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No registry at {path}, starting empty")
            return cls(path=path)

        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid registry file {path}: {e}") from e

        entries = data.get("models", {})
        if isinstance(entries, dict):
            entries = [dict(entry, name=entry.get("name", name)) for name, entry in entries.items()]
        models = [ModelInfo.from_dict(entry) for entry in entries]
        logger.info(f"Loaded {len(models)} model(s) from registry {path}")
        return cls(models, path=path)

    def add(self, info: ModelInfo) -> None:
        self._models[info.name] = info

    def get(self, name: str) -> Optional[ModelInfo]:
        return self._models.get(name)

    def resolve(self, name: str) -> ModelInfo:
        """Like ``get`` but raises ``ModelNotFound`` for unknown names."""
        info = self._models.get(name)
        if info is None:
            raise ModelNotFound(name)
        return info

    def list(self) -> List[ModelInfo]:
        return list(self._models.values())

    def runtime_config(self, name: str, **overrides) -> RuntimeConfig:
        """Build the RuntimeConfig used to load ``name``."""
        info = self.resolve(name)
        return RuntimeConfig(model_path=info.path, **overrides)

    def __contains__(self, name: str) -> bool:
        return name in self._models

    def __len__(self) -> int:
        return len(self._models)
