"""Settings for ohmygpu.

Defaults mirror the daemon defaults; a JSON file and ``OHMYGPU_*``
environment variables can override them. Settings are read-only here,
writing them back is the CLI's business.
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ohmygpu.errors import ConfigError
from ohmygpu.logger import get_logger

logger = get_logger(__name__)


def default_base_dir() -> Path:
    """``$OHMYGPU_HOME`` or ``~/.config/ohmygpu``."""
    env = os.environ.get("OHMYGPU_HOME")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".config" / "ohmygpu"


@dataclass
class DaemonSettings:
    port: int = 11434
    host: str = "127.0.0.1"


@dataclass
class ModelsSettings:
    """Where models live.

    Attributes:
        directory: Models directory (defaults to ``<base_dir>/models``)
        registry_path: Registry JSON file (defaults to ``<base_dir>/registry.json``)
    """
    directory: Optional[Path] = None
    registry_path: Optional[Path] = None

    def models_dir(self) -> Path:
        return Path(self.directory) if self.directory else default_base_dir() / "models"

    def registry_file(self) -> Path:
        return Path(self.registry_path) if self.registry_path else default_base_dir() / "registry.json"


@dataclass
class InferenceSettings:
    """Text generation defaults applied by the protocol adapters."""
    max_tokens: int = 2048
    temperature: float = 0.7
    top_p: float = 0.9
    use_gpu: bool = True
    stream_buffer: int = 100


@dataclass
class DiffusionSettings:
    """Image generation defaults."""
    width: int = 1024
    height: int = 1024
    steps: int = 9
    guidance_scale: float = 5.0


@dataclass
class RuntimeSettings:
    """Defaults for the RuntimeConfig built when a model gets loaded."""
    gpu_id: Optional[int] = 0
    vram_budget_mb: Optional[int] = None
    cpu_threads: Optional[int] = None


@dataclass
class Settings:
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    models: ModelsSettings = field(default_factory=ModelsSettings)
    inference: InferenceSettings = field(default_factory=InferenceSettings)
    diffusion: DiffusionSettings = field(default_factory=DiffusionSettings)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)

    # Environment overrides: variable -> (section, key)
    _ENV_OVERRIDES = {
        "OHMYGPU_PORT": ("daemon", "port"),
        "OHMYGPU_HOST": ("daemon", "host"),
        "OHMYGPU_MODELS_DIR": ("models", "directory"),
        "OHMYGPU_REGISTRY": ("models", "registry_path"),
        "OHMYGPU_MAX_TOKENS": ("inference", "max_tokens"),
        "OHMYGPU_TEMPERATURE": ("inference", "temperature"),
        "OHMYGPU_TOP_P": ("inference", "top_p"),
        "OHMYGPU_USE_GPU": ("inference", "use_gpu"),
        "OHMYGPU_GPU_ID": ("runtime", "gpu_id"),
        "OHMYGPU_VRAM_BUDGET_MB": ("runtime", "vram_budget_mb"),
        "OHMYGPU_CPU_THREADS": ("runtime", "cpu_threads"),
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """Build settings from a nested dict, ignoring unknown keys."""
        settings = cls()
        for section in fields(cls):
            values = data.get(section.name)
            if values is None:
                continue
            if not isinstance(values, dict):
                raise ConfigError(f"Settings section '{section.name}' must be an object")
            target = getattr(settings, section.name)
            known = {f.name for f in fields(target)}
            for key, value in values.items():
                if key in known:
                    setattr(target, key, value)
                else:
                    logger.warning(f"Ignoring unknown setting {section.name}.{key}")
        return settings

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Settings":
        """Load settings from a JSON file."""
        path = Path(path)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid settings file {path}: {e}") from e
        return cls.from_dict(data)

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Apply ``OHMYGPU_*`` overrides in place and return self."""
        environ = os.environ if environ is None else environ
        for var, (section, key) in self._ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw is None:
                continue
            target = getattr(self, section)
            setattr(target, key, _coerce(raw, getattr(target, key), var))
        return self

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Defaults with ``OHMYGPU_*`` overrides applied."""
        return cls().apply_env(environ)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "Settings":
        """Defaults, then the settings file if present, then the environment."""
        path = Path(path) if path is not None else default_base_dir() / "config.json"
        if path.exists():
            logger.debug(f"Reading settings from {path}")
            settings = cls.from_file(path)
        else:
            settings = cls()
        return settings.apply_env()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(raw: str, current: Any, var: str) -> Any:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    try:
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {var}: {raw!r}") from e
    if current is None and raw.strip().lstrip("-").isdigit():
        return int(raw)
    return raw
