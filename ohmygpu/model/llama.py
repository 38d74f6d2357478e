"""Llama-family decoder (Llama, Mistral, Qwen2, Qwen3).

Parameter names follow the transformers ``LlamaForCausalLM`` layout
(``model.layers.N.self_attn.q_proj.weight`` ...) so checkpoints load
without key remapping. Qwen3 adds per-head RMSNorm on queries and keys
(``qk_norm``); Qwen2 adds biases on the q/k/v projections.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from ohmygpu.components import RMSNorm, RotaryEmbedding, SwiGLUMLP
from ohmygpu.model.kv_cache import KVCache


@dataclass
class LlamaConfig:
    """Configuration for the Llama-family decoder."""
    vocab_size: int = 32000
    hidden_size: int = 4096
    intermediate_size: int = 11008
    num_hidden_layers: int = 32
    num_attention_heads: int = 32
    num_key_value_heads: Optional[int] = None
    head_dim: Optional[int] = None
    rms_norm_eps: float = 1e-6
    rope_theta: float = 10000.0
    qkv_bias: bool = False
    o_bias: bool = False
    qk_norm: bool = False
    tie_word_embeddings: bool = False

    def __post_init__(self):
        if self.num_key_value_heads is None:
            self.num_key_value_heads = self.num_attention_heads
        if self.head_dim is None:
            self.head_dim = self.hidden_size // self.num_attention_heads
        if self.num_attention_heads % self.num_key_value_heads != 0:
            raise ValueError(
                f"num_attention_heads ({self.num_attention_heads}) must be a multiple of "
                f"num_key_value_heads ({self.num_key_value_heads})"
            )

    @classmethod
    def from_hf_config(cls, hf_config: Dict[str, Any]) -> "LlamaConfig":
        """Create config from a transformers ``config.json`` dict."""
        model_type = hf_config.get("model_type", "llama")
        attention_bias = hf_config.get("attention_bias", False)
        return cls(
            vocab_size=hf_config.get("vocab_size", 32000),
            hidden_size=hf_config.get("hidden_size", 4096),
            intermediate_size=hf_config.get("intermediate_size", 11008),
            num_hidden_layers=hf_config.get("num_hidden_layers", 32),
            num_attention_heads=hf_config.get("num_attention_heads", 32),
            num_key_value_heads=hf_config.get("num_key_value_heads"),
            head_dim=hf_config.get("head_dim"),
            rms_norm_eps=hf_config.get("rms_norm_eps", 1e-6),
            rope_theta=hf_config.get("rope_theta", 10000.0),
            qkv_bias=attention_bias or model_type == "qwen2",
            o_bias=attention_bias,
            qk_norm=model_type == "qwen3",
            tie_word_embeddings=hf_config.get("tie_word_embeddings", False),
        )


def causal_mask(query_len: int, kv_len: int, device: torch.device) -> Optional[torch.Tensor]:
    """Boolean mask letting query i see keys up to its own absolute position.

    Returns None when every query may see every key (single-token decode).
    """
    if query_len == 1:
        return None
    past = kv_len - query_len
    q_pos = torch.arange(query_len, device=device).unsqueeze(1) + past
    k_pos = torch.arange(kv_len, device=device).unsqueeze(0)
    return (k_pos <= q_pos).unsqueeze(0).unsqueeze(0)


class LlamaAttention(nn.Module):
    """Grouped-query attention with rotary embeddings."""

    def __init__(self, config: LlamaConfig, layer_idx: int):
        super().__init__()
        self.layer_idx = layer_idx
        self.num_heads = config.num_attention_heads
        self.num_kv_heads = config.num_key_value_heads
        self.head_dim = config.head_dim

        self.q_proj = nn.Linear(config.hidden_size, self.num_heads * self.head_dim, bias=config.qkv_bias)
        self.k_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=config.qkv_bias)
        self.v_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=config.qkv_bias)
        self.o_proj = nn.Linear(self.num_heads * self.head_dim, config.hidden_size, bias=config.o_bias)

        if config.qk_norm:
            self.q_norm = RMSNorm(self.head_dim, eps=config.rms_norm_eps)
            self.k_norm = RMSNorm(self.head_dim, eps=config.rms_norm_eps)
        else:
            self.q_norm = None
            self.k_norm = None

        self.rotary_emb = RotaryEmbedding(self.head_dim, base=config.rope_theta)

    def forward(
        self,
        positions: torch.Tensor,
        hidden_states: torch.Tensor,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        """
        Args:
            positions: [batch, seq_len]
            hidden_states: [batch, seq_len, hidden]
            cache: Decode cache, updated in place

        Returns:
            [batch, seq_len, hidden]
        """
        batch_size, seq_len, _ = hidden_states.shape

        q = self.q_proj(hidden_states).view(batch_size, seq_len, self.num_heads, self.head_dim)
        k = self.k_proj(hidden_states).view(batch_size, seq_len, self.num_kv_heads, self.head_dim)
        v = self.v_proj(hidden_states).view(batch_size, seq_len, self.num_kv_heads, self.head_dim)

        if self.q_norm is not None:
            q = self.q_norm(q)
            k = self.k_norm(k)

        q = q.transpose(1, 2)
        k = k.transpose(1, 2)
        v = v.transpose(1, 2)

        q, k = self.rotary_emb(positions, q, k)

        if cache is not None:
            k, v = cache.update(self.layer_idx, k, v)

        if self.num_kv_heads != self.num_heads:
            k = k.repeat_interleave(self.num_heads // self.num_kv_heads, dim=1)
            v = v.repeat_interleave(self.num_heads // self.num_kv_heads, dim=1)

        mask = causal_mask(seq_len, k.shape[2], hidden_states.device)
        attn_output = F.scaled_dot_product_attention(q, k, v, attn_mask=mask)

        attn_output = attn_output.transpose(1, 2).reshape(batch_size, seq_len, -1)
        return self.o_proj(attn_output)


class LlamaDecoderLayer(nn.Module):

    def __init__(self, config: LlamaConfig, layer_idx: int):
        super().__init__()
        self.self_attn = LlamaAttention(config, layer_idx)
        self.mlp = SwiGLUMLP(config.hidden_size, config.intermediate_size)
        self.input_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.post_attention_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)

    def forward(
        self,
        positions: torch.Tensor,
        hidden_states: torch.Tensor,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        residual = hidden_states
        hidden_states = self.self_attn(positions, self.input_layernorm(hidden_states), cache)
        hidden_states = residual + hidden_states

        residual = hidden_states
        hidden_states = self.mlp(self.post_attention_layernorm(hidden_states))
        return residual + hidden_states


class LlamaModel(nn.Module):
    """Embedding + decoder stack + final norm (no LM head)."""

    def __init__(self, config: LlamaConfig):
        super().__init__()
        self.config = config
        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList(
            [LlamaDecoderLayer(config, i) for i in range(config.num_hidden_layers)]
        )
        self.norm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)

    def forward(
        self,
        input_ids: torch.Tensor,
        positions: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
        num_layers: Optional[int] = None,
        final_norm: bool = True,
    ) -> torch.Tensor:
        """Run the stack.

        Args:
            input_ids: [batch, seq_len]
            positions: [batch, seq_len]; defaults to continuing after the cache
            cache: Decode cache
            num_layers: Run only the first ``num_layers`` layers
            final_norm: Apply the final RMSNorm

        Returns:
            Hidden states [batch, seq_len, hidden]
        """
        if positions is None:
            past = cache.seq_len if cache is not None else 0
            positions = torch.arange(
                past, past + input_ids.shape[1], device=input_ids.device
            ).unsqueeze(0).expand(input_ids.shape[0], -1)

        hidden_states = self.embed_tokens(input_ids)
        layers = self.layers if num_layers is None else self.layers[:num_layers]
        for layer in layers:
            hidden_states = layer(positions, hidden_states, cache)

        if final_norm:
            hidden_states = self.norm(hidden_states)
        return hidden_states


class LlamaForCausalLM(nn.Module):

    def __init__(self, config: LlamaConfig):
        super().__init__()
        self.config = config
        self.model = LlamaModel(config)
        self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=False)
        if config.tie_word_embeddings:
            self.lm_head.weight = self.model.embed_tokens.weight

    @property
    def num_layers(self) -> int:
        return self.config.num_hidden_layers

    def forward(
        self,
        input_ids: torch.Tensor,
        positions: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        """Return logits [batch, seq_len, vocab_size]."""
        hidden_states = self.model(input_ids, positions, cache)
        return self.lm_head(hidden_states)
