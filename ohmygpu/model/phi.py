"""Phi decoder (Phi-1.5 / Phi-2).

Parallel residual block: attention and MLP both read the same LayerNorm
output and are added to the residual together. Only the leading
``partial_rotary_factor * head_dim`` channels of each head are rotated.
Parameter names follow transformers ``PhiForCausalLM``.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from ohmygpu.components import GeluMLP, RotaryEmbedding
from ohmygpu.model.kv_cache import KVCache
from ohmygpu.model.llama import causal_mask


@dataclass
class PhiConfig:
    vocab_size: int = 51200
    hidden_size: int = 2560
    intermediate_size: int = 10240
    num_hidden_layers: int = 32
    num_attention_heads: int = 32
    num_key_value_heads: Optional[int] = None
    partial_rotary_factor: float = 0.4
    layer_norm_eps: float = 1e-5
    rope_theta: float = 10000.0
    qk_layernorm: bool = False

    def __post_init__(self):
        if self.num_key_value_heads is None:
            self.num_key_value_heads = self.num_attention_heads

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads

    @property
    def rotary_dim(self) -> int:
        return int(self.partial_rotary_factor * self.head_dim)

    @classmethod
    def from_hf_config(cls, hf_config: Dict[str, Any]) -> "PhiConfig":
        return cls(
            vocab_size=hf_config.get("vocab_size", 51200),
            hidden_size=hf_config.get("hidden_size", hf_config.get("n_embd", 2560)),
            intermediate_size=hf_config.get("intermediate_size", 10240),
            num_hidden_layers=hf_config.get("num_hidden_layers", hf_config.get("n_layer", 32)),
            num_attention_heads=hf_config.get("num_attention_heads", hf_config.get("n_head", 32)),
            num_key_value_heads=hf_config.get("num_key_value_heads"),
            partial_rotary_factor=hf_config.get("partial_rotary_factor", 0.4),
            layer_norm_eps=hf_config.get("layer_norm_eps", 1e-5),
            rope_theta=hf_config.get("rope_theta", 10000.0),
            qk_layernorm=hf_config.get("qk_layernorm", False),
        )


class PhiAttention(nn.Module):

    def __init__(self, config: PhiConfig, layer_idx: int):
        super().__init__()
        self.layer_idx = layer_idx
        self.num_heads = config.num_attention_heads
        self.num_kv_heads = config.num_key_value_heads
        self.head_dim = config.head_dim

        self.q_proj = nn.Linear(config.hidden_size, self.num_heads * self.head_dim, bias=True)
        self.k_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=True)
        self.v_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=True)
        self.dense = nn.Linear(self.num_heads * self.head_dim, config.hidden_size, bias=True)

        if config.qk_layernorm:
            self.q_layernorm = nn.LayerNorm(self.head_dim, eps=config.layer_norm_eps)
            self.k_layernorm = nn.LayerNorm(self.head_dim, eps=config.layer_norm_eps)
        else:
            self.q_layernorm = None
            self.k_layernorm = None

        self.rotary_emb = RotaryEmbedding(self.head_dim, rotary_dim=config.rotary_dim, base=config.rope_theta)

    def forward(
        self,
        positions: torch.Tensor,
        hidden_states: torch.Tensor,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        batch_size, seq_len, _ = hidden_states.shape

        q = self.q_proj(hidden_states).view(batch_size, seq_len, self.num_heads, self.head_dim)
        k = self.k_proj(hidden_states).view(batch_size, seq_len, self.num_kv_heads, self.head_dim)
        v = self.v_proj(hidden_states).view(batch_size, seq_len, self.num_kv_heads, self.head_dim)

        if self.q_layernorm is not None:
            q = self.q_layernorm(q)
            k = self.k_layernorm(k)

        q, k, v = q.transpose(1, 2), k.transpose(1, 2), v.transpose(1, 2)
        q, k = self.rotary_emb(positions, q, k)

        if cache is not None:
            k, v = cache.update(self.layer_idx, k, v)

        if self.num_kv_heads != self.num_heads:
            k = k.repeat_interleave(self.num_heads // self.num_kv_heads, dim=1)
            v = v.repeat_interleave(self.num_heads // self.num_kv_heads, dim=1)

        # Phi overflows in half precision inside the softmax, upcast
        mask = causal_mask(seq_len, k.shape[2], hidden_states.device)
        attn_output = F.scaled_dot_product_attention(q.float(), k.float(), v.float(), attn_mask=mask)
        attn_output = attn_output.to(hidden_states.dtype)

        attn_output = attn_output.transpose(1, 2).reshape(batch_size, seq_len, -1)
        return self.dense(attn_output)


class PhiDecoderLayer(nn.Module):

    def __init__(self, config: PhiConfig, layer_idx: int):
        super().__init__()
        self.input_layernorm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)
        self.self_attn = PhiAttention(config, layer_idx)
        self.mlp = GeluMLP(config.hidden_size, config.intermediate_size)

    def forward(
        self,
        positions: torch.Tensor,
        hidden_states: torch.Tensor,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        residual = hidden_states
        normed = self.input_layernorm(hidden_states)
        return residual + self.self_attn(positions, normed, cache) + self.mlp(normed)


class PhiModel(nn.Module):

    def __init__(self, config: PhiConfig):
        super().__init__()
        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList([PhiDecoderLayer(config, i) for i in range(config.num_hidden_layers)])
        self.final_layernorm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)

    def forward(
        self,
        input_ids: torch.Tensor,
        positions: torch.Tensor,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        hidden_states = self.embed_tokens(input_ids)
        for layer in self.layers:
            hidden_states = layer(positions, hidden_states, cache)
        return self.final_layernorm(hidden_states)


class PhiForCausalLM(nn.Module):

    def __init__(self, config: PhiConfig):
        super().__init__()
        self.config = config
        self.model = PhiModel(config)
        self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=True)

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
        if positions is None:
            past = cache.seq_len if cache is not None else 0
            positions = torch.arange(
                past, past + input_ids.shape[1], device=input_ids.device
            ).unsqueeze(0).expand(input_ids.shape[0], -1)
        return self.lm_head(self.model(input_ids, positions, cache))
