"""Pytest configuration and fixtures for ohmygpu tests.

Provides shared fixtures for:
- A byte-level tokenizer (every UTF-8 byte is one token, plus ``</s>``)
- A scripted language model that emits a fixed token sequence
- Tiny random-weight text and image models, in memory and on disk
"""

import json
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional

import pytest
import torch
from safetensors.torch import save_file
from tokenizers import Tokenizer as HFTokenizer
from tokenizers import decoders, models, pre_tokenizers
from transformers import PreTrainedTokenizerFast

from ohmygpu.model.llama import LlamaConfig
from ohmygpu.model.text import TextModel
from ohmygpu.model.vae import AutoencoderKL, VaeConfig
from ohmygpu.model.zimage import ZImageConfig, ZImageTextEncoder, ZImageTransformer2DModel
from ohmygpu.runtime.tokenizer import Tokenizer

EOS_TOKEN = "</s>"


# ============================================================================
# Tokenizer Fixtures
# ============================================================================

def build_byte_tokenizer() -> HFTokenizer:
    """256 byte tokens (ids 0-255) followed by ``</s>`` (id 256)."""
    alphabet = sorted(pre_tokenizers.ByteLevel.alphabet())
    vocab = {ch: i for i, ch in enumerate(alphabet)}
    tokenizer = HFTokenizer(models.BPE(vocab=vocab, merges=[]))
    tokenizer.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    tokenizer.decoder = decoders.ByteLevel()
    tokenizer.add_special_tokens([EOS_TOKEN])
    return tokenizer


@pytest.fixture
def hf_byte_tokenizer():
    """Return the raw ``tokenizers`` byte-level tokenizer."""
    return build_byte_tokenizer()


@pytest.fixture
def byte_tokenizer(hf_byte_tokenizer):
    """Return a Tokenizer wrapping the byte-level tokenizer."""
    return Tokenizer(PreTrainedTokenizerFast(tokenizer_object=hf_byte_tokenizer, eos_token=EOS_TOKEN))


# ============================================================================
# Model Fixtures
# ============================================================================

class ScriptedModel:
    """Language model stand-in that emits ``script`` token by token.

    Once the script runs out it keeps emitting ``filler``. Every forward
    pass is recorded.
    """

    def __init__(self, script: List[int], vocab_size: int = 257, filler: Optional[int] = None):
        self.script = list(script)
        self.vocab_size = vocab_size
        self.filler = filler if filler is not None else ord("a")
        self.calls = 0
        self.inputs: List[List[int]] = []

    def new_cache(self):
        return {"steps": 0}

    def __call__(self, input_ids: torch.Tensor, cache=None) -> torch.Tensor:
        step = cache["steps"]
        cache["steps"] += 1
        self.calls += 1
        self.inputs.append(input_ids[0].tolist())
        target = self.script[step] if step < len(self.script) else self.filler
        logits = torch.zeros(1, input_ids.shape[1], self.vocab_size)
        logits[0, -1, target] = 100.0
        return logits


@pytest.fixture
def scripted_model():
    """Return a factory for ScriptedModel."""
    return ScriptedModel


@pytest.fixture
def tiny_llama_hf_config():
    """Return a transformers-style config for a tiny Qwen3 decoder."""
    return {
        "model_type": "qwen3",
        "vocab_size": 257,
        "hidden_size": 32,
        "intermediate_size": 64,
        "num_hidden_layers": 2,
        "num_attention_heads": 4,
        "num_key_value_heads": 2,
        "head_dim": 8,
        "rms_norm_eps": 1e-6,
        "rope_theta": 10000.0,
        "tie_word_embeddings": False,
    }


@pytest.fixture
def tiny_phi_hf_config():
    """Return a transformers-style config for a tiny Phi decoder."""
    return {
        "model_type": "phi",
        "vocab_size": 257,
        "hidden_size": 32,
        "intermediate_size": 64,
        "num_hidden_layers": 2,
        "num_attention_heads": 4,
        "partial_rotary_factor": 0.5,
        "layer_norm_eps": 1e-5,
    }


@pytest.fixture
def tiny_text_encoder():
    """Return a tiny random-weight caption encoder (hidden size 32)."""
    torch.manual_seed(0)
    config = LlamaConfig(
        vocab_size=257,
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=2,
        num_attention_heads=2,
        num_key_value_heads=1,
        head_dim=16,
        qk_norm=True,
    )
    return ZImageTextEncoder(config).eval()


@pytest.fixture
def tiny_zimage_config():
    """Return a Z-Image transformer config small enough for CPU tests."""
    return ZImageConfig(
        dim=64,
        n_layers=1,
        n_refiner_layers=1,
        n_heads=2,
        n_kv_heads=2,
        cap_feat_dim=32,
        axes_dims=[8, 12, 12],
        axes_lens=[512, 64, 64],
    )


@pytest.fixture
def tiny_transformer(tiny_zimage_config):
    """Return a tiny random-weight Z-Image transformer."""
    torch.manual_seed(0)
    return ZImageTransformer2DModel(tiny_zimage_config).eval()


@pytest.fixture
def tiny_vae_config():
    """Return a 16-channel VAE config with the full 8x spatial factor."""
    return VaeConfig(block_out_channels=[8, 8, 8, 8], layers_per_block=1, norm_num_groups=4)


@pytest.fixture
def tiny_vae(tiny_vae_config):
    """Return a tiny random-weight VAE decoder."""
    torch.manual_seed(0)
    return AutoencoderKL(tiny_vae_config).eval()


# ============================================================================
# On-disk Model Fixtures
# ============================================================================

def _save_state(module: torch.nn.Module, path: Path, strip: str = "") -> None:
    state = {k[len(strip):] if strip and k.startswith(strip) else k: v.contiguous()
             for k, v in module.state_dict().items()}
    save_file(state, str(path))


@pytest.fixture
def tiny_text_model_dir(tmp_path, hf_byte_tokenizer, tiny_llama_hf_config):
    """Write a tiny Qwen3 model in transformers layout and return its directory."""
    model_dir = tmp_path / "tiny-qwen3"
    model_dir.mkdir()
    torch.manual_seed(0)
    model = TextModel.from_config(tiny_llama_hf_config)
    (model_dir / "config.json").write_text(json.dumps(tiny_llama_hf_config))
    _save_state(model.module, model_dir / "model.safetensors")
    hf_byte_tokenizer.save(str(model_dir / "tokenizer.json"))
    return model_dir


@pytest.fixture
def tiny_zimage_dir(tmp_path, hf_byte_tokenizer, tiny_text_encoder, tiny_transformer, tiny_vae,
                    tiny_zimage_config, tiny_vae_config):
    """Write the tiny Z-Image components in diffusers layout and return the directory."""
    root = tmp_path / "z-image-tiny"
    (root / "tokenizer").mkdir(parents=True)
    hf_byte_tokenizer.save(str(root / "tokenizer" / "tokenizer.json"))

    encoder_dir = root / "text_encoder"
    encoder_dir.mkdir()
    encoder_config = tiny_text_encoder.config
    (encoder_dir / "config.json").write_text(json.dumps({
        "model_type": "qwen3",
        "vocab_size": encoder_config.vocab_size,
        "hidden_size": encoder_config.hidden_size,
        "intermediate_size": encoder_config.intermediate_size,
        "num_hidden_layers": encoder_config.num_hidden_layers,
        "num_attention_heads": encoder_config.num_attention_heads,
        "num_key_value_heads": encoder_config.num_key_value_heads,
        "head_dim": encoder_config.head_dim,
    }))
    # Qwen3Model checkpoints carry no "model." prefix
    _save_state(tiny_text_encoder, encoder_dir / "model-00001-of-00001.safetensors", strip="model.")

    transformer_dir = root / "transformer"
    transformer_dir.mkdir()
    config = {"_class_name": "ZImageTransformer2DModel"}
    config.update(asdict(tiny_zimage_config))
    (transformer_dir / "config.json").write_text(json.dumps(config))
    _save_state(tiny_transformer, transformer_dir / "diffusion_pytorch_model.safetensors")

    vae_dir = root / "vae"
    vae_dir.mkdir()
    (vae_dir / "config.json").write_text(json.dumps(asdict(tiny_vae_config)))
    _save_state(tiny_vae, vae_dir / "diffusion_pytorch_model.safetensors")
    return root


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "gpu: marks tests that require GPU"
    )
    config.addinivalue_line(
        "markers", "integration: marks integration tests"
    )


def pytest_collection_modifyitems(config, items):
    """Skip GPU tests when CUDA is unavailable."""
    skip_gpu = pytest.mark.skip(reason="CUDA not available")
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)
        if "gpu" in item.keywords and not torch.cuda.is_available():
            item.add_marker(skip_gpu)
