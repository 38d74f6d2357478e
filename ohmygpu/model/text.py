"""Text decoder selection and loading.

Maps ``config.json::model_type`` onto one of the supported decoder
architectures and wraps the result in ``TextModel``, which is what the
generation engine drives.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import torch
import torch.nn as nn

from ohmygpu.errors import ConfigError
from ohmygpu.logger import get_logger
from ohmygpu.model.kv_cache import KVCache
from ohmygpu.model.llama import LlamaConfig, LlamaForCausalLM
from ohmygpu.model.loader import get_safetensor_files, load_safetensors_weights, read_json_config
from ohmygpu.model.phi import PhiConfig, PhiForCausalLM

logger = get_logger(__name__)


class TextArchitecture(Enum):
    LLAMA = "llama"
    PHI = "phi"


MODEL_REGISTRY = {
    TextArchitecture.LLAMA: (LlamaForCausalLM, LlamaConfig),
    TextArchitecture.PHI: (PhiForCausalLM, PhiConfig),
}

_PHI_MODEL_TYPES = ("phi", "phi-msft", "phi2")


def detect_architecture(hf_config: Dict[str, Any]) -> TextArchitecture:
    """Detect the decoder architecture from an HF config dict.

    ``phi``, ``phi-msft`` and ``phi2`` select Phi; every other model type is
    treated as Llama-style.
    """
    model_type = str(hf_config.get("model_type", "llama")).lower()
    if model_type in _PHI_MODEL_TYPES:
        return TextArchitecture.PHI
    return TextArchitecture.LLAMA


class TextModel:
    """A loaded causal language model of one of the supported architectures.

    Args:
        architecture: Which decoder ``module`` is
        module: The decoder, already on its device and in eval mode
        device: Device the module lives on
    """

    def __init__(self, architecture: TextArchitecture, module: nn.Module, device: Union[str, torch.device] = "cpu"):
        self.architecture = architecture
        self.module = module
        self.device = torch.device(device)

    @classmethod
    def from_config(
        cls,
        hf_config: Dict[str, Any],
        device: Union[str, torch.device] = "cpu",
        dtype: torch.dtype = torch.float32,
    ) -> "TextModel":
        """Build a randomly initialised model from an HF config dict."""
        architecture = detect_architecture(hf_config)
        model_cls, config_cls = MODEL_REGISTRY[architecture]
        try:
            config = config_cls.from_hf_config(hf_config)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Unsupported {architecture.value} config: {e}") from e
        module = model_cls(config).to(device=device, dtype=dtype).eval()
        return cls(architecture, module, device)

    @classmethod
    def from_pretrained(
        cls,
        model_path: Union[str, Path],
        device: Union[str, torch.device] = "cpu",
        dtype: torch.dtype = torch.float32,
        hf_config: Optional[Dict[str, Any]] = None,
    ) -> "TextModel":
        """Load config.json and safetensors weights from a model directory."""
        model_path = Path(model_path)
        if hf_config is None:
            hf_config = read_json_config(model_path / "config.json")

        files = get_safetensor_files(model_path)
        if not files:
            raise ConfigError(f"Could not find model weights (safetensors) in {model_path}")

        model = cls.from_config(hf_config, device=device, dtype=dtype)
        logger.info(f"Detected architecture: {model.architecture.value} "
                    f"(model_type={hf_config.get('model_type', 'llama')})")
        load_safetensors_weights(model.module, files, dtype=dtype, desc="Loading text model")
        return model

    @property
    def num_layers(self) -> int:
        return self.module.num_layers

    @property
    def vocab_size(self) -> int:
        return self.module.config.vocab_size

    def new_cache(self) -> KVCache:
        return KVCache(self.num_layers)

    def forward(self, input_ids: torch.Tensor, cache: Optional[KVCache] = None) -> torch.Tensor:
        """Run one step and return logits [batch, seq_len, vocab_size]."""
        with torch.no_grad():
            return self.module(input_ids.to(self.device), cache=cache)

    __call__ = forward
