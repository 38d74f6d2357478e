"""Diffusion runtime: text-to-image generation."""

from enum import Enum
from pathlib import Path
from typing import Optional

import torch

from ohmygpu.errors import ConfigError, LoadError
from ohmygpu.logger import get_logger
from ohmygpu.model.loader import get_safetensor_files
from ohmygpu.runtime.base import Runtime
from ohmygpu.runtime.device import (
    check_vram_budget,
    configure_cpu_threads,
    default_dtype,
    is_out_of_memory,
    release_memory,
    select_device,
)
from ohmygpu.runtime.pipeline import ZImagePipeline
from ohmygpu.types import ImageGenRequest, ImageGenResponse, RuntimeCapabilities, RuntimeConfig

logger = get_logger(__name__)


class DiffusionFamily(Enum):
    ZIMAGE = "z-image"
    FLUX = "flux"


def detect_diffusion_family(model_path: Path) -> DiffusionFamily:
    """Identify the diffusion architecture of a model directory.

    Checks ``transformer/config.json`` for the Z-Image class name, then a
    FLUX checkpoint file, then the directory name.
    """
    model_path = Path(model_path)
    transformer_config = model_path / "transformer" / "config.json"
    if transformer_config.is_file():
        text = transformer_config.read_text()
        if "ZImage" in text or "z_image" in text:
            return DiffusionFamily.ZIMAGE

    if (model_path / "flux1-dev.safetensors").exists():
        return DiffusionFamily.FLUX

    dir_name = model_path.name.lower()
    if "z-image" in dir_name or "zimage" in dir_name:
        return DiffusionFamily.ZIMAGE
    if "flux" in dir_name:
        return DiffusionFamily.FLUX

    raise ConfigError(f"Could not detect diffusion model type from path: {model_path}")


def _weight_files(model_path: Path):
    files = []
    for sub, stem in (("text_encoder", "model"), ("transformer", "diffusion_pytorch_model"),
                      ("vae", "diffusion_pytorch_model")):
        if (model_path / sub).is_dir():
            files.extend(get_safetensor_files(model_path / sub, stem=stem))
    return files


class DiffusionRuntime(Runtime):
    """Runtime for text-to-image pipelines (Z-Image)."""

    name = "diffusion"
    capabilities = RuntimeCapabilities(images=True)

    def __init__(self, use_gpu: bool = True):
        super().__init__()
        self.use_gpu = use_gpu
        self.pipeline: Optional[ZImagePipeline] = None
        self.family: Optional[DiffusionFamily] = None
        self.device: Optional[torch.device] = None

    def _load(self, config: RuntimeConfig) -> None:
        model_path = config.model_path
        if not model_path.is_dir():
            raise ConfigError(f"Model directory not found: {model_path}")

        family = detect_diffusion_family(model_path)
        logger.info(f"Detected diffusion model: {family.value}")
        if family == DiffusionFamily.FLUX:
            raise ConfigError("FLUX model loading not implemented")

        device = select_device(config.gpu_id, self.use_gpu)
        dtype = default_dtype(device)
        configure_cpu_threads(config.cpu_threads)
        check_vram_budget(_weight_files(model_path), config.vram_budget_mb, dtype)

        self.device = device
        try:
            self.pipeline = ZImagePipeline.from_pretrained(model_path, device=device, dtype=dtype)
        except Exception as e:
            if is_out_of_memory(e):
                raise LoadError(f"Out of memory while loading {model_path} on {device}") from e
            raise
        self.family = family

    def _unload(self) -> None:
        self.pipeline = None
        self.family = None
        release_memory(self.device)
        self.device = None

    def generate_image(self, request: ImageGenRequest) -> ImageGenResponse:
        self._require("images")
        return self.pipeline.generate(request)
