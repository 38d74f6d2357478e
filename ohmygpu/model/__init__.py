"""Model definitions for ohmygpu.

Text decoders (generation engine):
- LlamaForCausalLM: Llama / Mistral / Qwen2 / Qwen3
- PhiForCausalLM: Phi-1.5 / Phi-2

Image pipeline (Z-Image):
- ZImageTextEncoder: Qwen3 caption encoder
- ZImageTransformer2DModel: flow-matching denoiser
- AutoencoderKL: latent decoder
"""

from ohmygpu.model.kv_cache import KVCache
from ohmygpu.model.llama import LlamaConfig, LlamaForCausalLM, LlamaModel
from ohmygpu.model.phi import PhiConfig, PhiForCausalLM
from ohmygpu.model.text import MODEL_REGISTRY, TextArchitecture, TextModel, detect_architecture
from ohmygpu.model.vae import AutoencoderKL, VaeConfig
from ohmygpu.model.zimage import ZImageConfig, ZImageTextEncoder, ZImageTransformer2DModel
from ohmygpu.model.loader import (
    get_safetensor_files,
    load_safetensors_weights,
    read_json_config,
)

__all__ = [
    # Text
    "LlamaConfig",
    "LlamaModel",
    "LlamaForCausalLM",
    "PhiConfig",
    "PhiForCausalLM",
    "TextArchitecture",
    "TextModel",
    "MODEL_REGISTRY",
    "detect_architecture",
    "KVCache",
    # Image
    "ZImageConfig",
    "ZImageTextEncoder",
    "ZImageTransformer2DModel",
    "AutoencoderKL",
    "VaeConfig",
    # Loader
    "get_safetensor_files",
    "load_safetensors_weights",
    "read_json_config",
]
