"""Z-Image single-stream diffusion transformer and its text encoder.

Parameter names follow the diffusers ``ZImageTransformer2DModel`` layout so
``transformer/diffusion_pytorch_model-*.safetensors`` loads without
remapping. Image patches and caption tokens are refined separately, then
concatenated into one stream that shares a 3-axis rotary embedding
(caption index, image row, image column).
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from ohmygpu.components import RMSNorm
from ohmygpu.model.llama import LlamaConfig, LlamaModel

ADALN_EMBED_DIM = 256
SEQ_MULTI_OF = 32


@dataclass
class ZImageConfig:
    """Configuration for the Z-Image transformer (defaults: Z-Image-Turbo)."""
    all_patch_size: List[int] = field(default_factory=lambda: [2])
    all_f_patch_size: List[int] = field(default_factory=lambda: [1])
    in_channels: int = 16
    dim: int = 3840
    n_layers: int = 30
    n_refiner_layers: int = 2
    n_heads: int = 30
    n_kv_heads: int = 30
    norm_eps: float = 1e-5
    qk_norm: bool = True
    cap_feat_dim: int = 2560
    rope_theta: float = 256.0
    t_scale: float = 1000.0
    axes_dims: List[int] = field(default_factory=lambda: [32, 48, 48])
    axes_lens: List[int] = field(default_factory=lambda: [1024, 512, 512])

    @property
    def patch_size(self) -> int:
        return self.all_patch_size[0]

    @property
    def f_patch_size(self) -> int:
        return self.all_f_patch_size[0]

    @property
    def head_dim(self) -> int:
        return self.dim // self.n_heads

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "ZImageConfig":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in config.items() if k in known})


# ============================================================================
# Embeddings
# ============================================================================

def timestep_embedding(t: torch.Tensor, dim: int, max_period: float = 10000.0) -> torch.Tensor:
    """Sinusoidal timestep features, cosine half first."""
    half = dim // 2
    freqs = torch.exp(
        -math.log(max_period) * torch.arange(half, dtype=torch.float32, device=t.device) / half
    )
    args = t.float()[:, None] * freqs[None]
    embedding = torch.cat([torch.cos(args), torch.sin(args)], dim=-1)
    if dim % 2:
        embedding = torch.cat([embedding, torch.zeros_like(embedding[:, :1])], dim=-1)
    return embedding


class TimestepEmbedder(nn.Module):

    def __init__(self, out_size: int, mid_size: int = 1024, frequency_embedding_size: int = 256):
        super().__init__()
        self.frequency_embedding_size = frequency_embedding_size
        self.mlp = nn.Sequential(
            nn.Linear(frequency_embedding_size, mid_size, bias=True),
            nn.SiLU(),
            nn.Linear(mid_size, out_size, bias=True),
        )

    def forward(self, t: torch.Tensor) -> torch.Tensor:
        t_freq = timestep_embedding(t, self.frequency_embedding_size)
        return self.mlp(t_freq.to(self.mlp[0].weight.dtype))


class RopeEmbedder:
    """Complex rotary frequencies for (caption, row, column) position ids."""

    def __init__(self, theta: float, axes_dims: List[int], axes_lens: List[int]):
        self.axes_dims = axes_dims
        self.freqs_cis = [
            self._precompute(d, e, theta) for d, e in zip(axes_dims, axes_lens)
        ]

    @staticmethod
    def _precompute(dim: int, end: int, theta: float) -> torch.Tensor:
        freqs = 1.0 / (theta ** (torch.arange(0, dim, 2, dtype=torch.float64) / dim))
        freqs = torch.outer(torch.arange(end, dtype=torch.float64), freqs).float()
        return torch.polar(torch.ones_like(freqs), freqs)

    def __call__(self, ids: torch.Tensor) -> torch.Tensor:
        """ids [seq_len, 3] -> complex frequencies [seq_len, head_dim // 2]."""
        device = ids.device
        if self.freqs_cis[0].device != device:
            self.freqs_cis = [f.to(device) for f in self.freqs_cis]
        return torch.cat([self.freqs_cis[i][ids[:, i]] for i in range(len(self.axes_dims))], dim=-1)


def apply_rotary_emb(x: torch.Tensor, freqs_cis: torch.Tensor) -> torch.Tensor:
    """Rotate interleaved channel pairs. x [batch, seq, heads, head_dim]."""
    x_complex = torch.view_as_complex(x.float().reshape(*x.shape[:-1], -1, 2))
    x_out = torch.view_as_real(x_complex * freqs_cis.unsqueeze(0).unsqueeze(2)).flatten(3)
    return x_out.type_as(x)


# ============================================================================
# Blocks
# ============================================================================

class ZImageAttention(nn.Module):

    def __init__(self, dim: int, n_heads: int, n_kv_heads: int, qk_norm: bool, eps: float):
        super().__init__()
        self.n_heads = n_heads
        self.n_kv_heads = n_kv_heads
        self.head_dim = dim // n_heads
        self.to_q = nn.Linear(dim, n_heads * self.head_dim, bias=False)
        self.to_k = nn.Linear(dim, n_kv_heads * self.head_dim, bias=False)
        self.to_v = nn.Linear(dim, n_kv_heads * self.head_dim, bias=False)
        self.to_out = nn.ModuleList([nn.Linear(n_heads * self.head_dim, dim, bias=False)])
        self.norm_q = RMSNorm(self.head_dim, eps=eps) if qk_norm else None
        self.norm_k = RMSNorm(self.head_dim, eps=eps) if qk_norm else None

    def forward(self, x: torch.Tensor, freqs_cis: torch.Tensor) -> torch.Tensor:
        batch_size, seq_len, _ = x.shape
        q = self.to_q(x).view(batch_size, seq_len, self.n_heads, self.head_dim)
        k = self.to_k(x).view(batch_size, seq_len, self.n_kv_heads, self.head_dim)
        v = self.to_v(x).view(batch_size, seq_len, self.n_kv_heads, self.head_dim)

        if self.norm_q is not None:
            q = self.norm_q(q)
            k = self.norm_k(k)

        q = apply_rotary_emb(q, freqs_cis)
        k = apply_rotary_emb(k, freqs_cis)

        q, k, v = q.transpose(1, 2), k.transpose(1, 2), v.transpose(1, 2)
        if self.n_kv_heads != self.n_heads:
            k = k.repeat_interleave(self.n_heads // self.n_kv_heads, dim=1)
            v = v.repeat_interleave(self.n_heads // self.n_kv_heads, dim=1)

        out = F.scaled_dot_product_attention(q, k, v)
        out = out.transpose(1, 2).reshape(batch_size, seq_len, -1)
        return self.to_out[0](out)


class FeedForward(nn.Module):

    def __init__(self, dim: int, hidden_dim: int):
        super().__init__()
        self.w1 = nn.Linear(dim, hidden_dim, bias=False)
        self.w2 = nn.Linear(hidden_dim, dim, bias=False)
        self.w3 = nn.Linear(dim, hidden_dim, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.w2(F.silu(self.w1(x)) * self.w3(x))


class ZImageTransformerBlock(nn.Module):
    """Sandwich-norm transformer block, optionally modulated by the timestep."""

    def __init__(self, config: ZImageConfig, modulation: bool = True):
        super().__init__()
        dim = config.dim
        self.attention = ZImageAttention(dim, config.n_heads, config.n_kv_heads, config.qk_norm, config.norm_eps)
        self.feed_forward = FeedForward(dim, int(dim / 3 * 8))
        self.attention_norm1 = RMSNorm(dim, eps=config.norm_eps)
        self.ffn_norm1 = RMSNorm(dim, eps=config.norm_eps)
        self.attention_norm2 = RMSNorm(dim, eps=config.norm_eps)
        self.ffn_norm2 = RMSNorm(dim, eps=config.norm_eps)
        self.modulation = modulation
        if modulation:
            self.adaLN_modulation = nn.Sequential(
                nn.Linear(min(dim, ADALN_EMBED_DIM), 4 * dim, bias=True),
            )

    def forward(
        self,
        x: torch.Tensor,
        freqs_cis: torch.Tensor,
        adaln_input: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        if self.modulation:
            scale_msa, gate_msa, scale_mlp, gate_mlp = (
                self.adaLN_modulation(adaln_input).unsqueeze(1).chunk(4, dim=2)
            )
            gate_msa, gate_mlp = gate_msa.tanh(), gate_mlp.tanh()
            scale_msa, scale_mlp = 1.0 + scale_msa, 1.0 + scale_mlp

            attn_out = self.attention(self.attention_norm1(x) * scale_msa, freqs_cis)
            x = x + gate_msa * self.attention_norm2(attn_out)
            x = x + gate_mlp * self.ffn_norm2(self.feed_forward(self.ffn_norm1(x) * scale_mlp))
        else:
            attn_out = self.attention(self.attention_norm1(x), freqs_cis)
            x = x + self.attention_norm2(attn_out)
            x = x + self.ffn_norm2(self.feed_forward(self.ffn_norm1(x)))
        return x


class FinalLayer(nn.Module):

    def __init__(self, hidden_size: int, out_channels: int):
        super().__init__()
        self.norm_final = nn.LayerNorm(hidden_size, elementwise_affine=False, eps=1e-6)
        self.linear = nn.Linear(hidden_size, out_channels, bias=True)
        self.adaLN_modulation = nn.Sequential(
            nn.SiLU(),
            nn.Linear(min(hidden_size, ADALN_EMBED_DIM), hidden_size, bias=True),
        )

    def forward(self, x: torch.Tensor, c: torch.Tensor) -> torch.Tensor:
        scale = 1.0 + self.adaLN_modulation(c)
        return self.linear(self.norm_final(x) * scale.unsqueeze(1))


# ============================================================================
# Transformer
# ============================================================================

class ZImageTransformer2DModel(nn.Module):
    """Velocity predictor over a [batch, channels, frames, height, width] latent."""

    def __init__(self, config: ZImageConfig):
        super().__init__()
        self.config = config
        p, pf = config.patch_size, config.f_patch_size
        key = f"{p}-{pf}"
        patch_dim = pf * p * p * config.in_channels

        self.all_x_embedder = nn.ModuleDict({key: nn.Linear(patch_dim, config.dim, bias=True)})
        self.all_final_layer = nn.ModuleDict({key: FinalLayer(config.dim, patch_dim)})
        self.noise_refiner = nn.ModuleList(
            [ZImageTransformerBlock(config, modulation=True) for _ in range(config.n_refiner_layers)]
        )
        self.context_refiner = nn.ModuleList(
            [ZImageTransformerBlock(config, modulation=False) for _ in range(config.n_refiner_layers)]
        )
        self.t_embedder = TimestepEmbedder(min(config.dim, ADALN_EMBED_DIM), mid_size=1024)
        self.cap_embedder = nn.Sequential(
            RMSNorm(config.cap_feat_dim, eps=config.norm_eps),
            nn.Linear(config.cap_feat_dim, config.dim, bias=True),
        )
        self.x_pad_token = nn.Parameter(torch.empty(1, config.dim))
        self.cap_pad_token = nn.Parameter(torch.empty(1, config.dim))
        self.layers = nn.ModuleList(
            [ZImageTransformerBlock(config, modulation=True) for _ in range(config.n_layers)]
        )
        self.rope_embedder = RopeEmbedder(config.rope_theta, config.axes_dims, config.axes_lens)

        nn.init.normal_(self.x_pad_token, std=0.02)
        nn.init.normal_(self.cap_pad_token, std=0.02)

    @property
    def patch_size(self) -> int:
        return self.config.patch_size

    @staticmethod
    def _pad_len(n: int) -> int:
        return (-n) % SEQ_MULTI_OF

    def _patchify(self, latent: torch.Tensor) -> Tuple[torch.Tensor, Tuple[int, int, int]]:
        """[C, F, H, W] -> tokens [F' * H' * W', pF * p * p * C]."""
        p, pf = self.config.patch_size, self.config.f_patch_size
        c, f, h, w = latent.shape
        ft, ht, wt = f // pf, h // p, w // p
        tokens = latent.view(c, ft, pf, ht, p, wt, p)
        tokens = tokens.permute(1, 3, 5, 2, 4, 6, 0).reshape(ft * ht * wt, pf * p * p * c)
        return tokens, (ft, ht, wt)

    def _unpatchify(self, tokens: torch.Tensor, grid: Tuple[int, int, int]) -> torch.Tensor:
        p, pf = self.config.patch_size, self.config.f_patch_size
        ft, ht, wt = grid
        c = self.config.in_channels
        x = tokens.view(ft, ht, wt, pf, p, p, c)
        return x.permute(6, 0, 3, 1, 4, 2, 5).reshape(c, ft * pf, ht * p, wt * p)

    @staticmethod
    def _grid_ids(size: Tuple[int, int, int], start: Tuple[int, int, int], device: torch.device) -> torch.Tensor:
        axes = [torch.arange(s, s + n, device=device) for s, n in zip(start, size)]
        grids = torch.meshgrid(*axes, indexing="ij")
        return torch.stack(grids, dim=-1).reshape(-1, 3)

    def forward(self, x: torch.Tensor, t: torch.Tensor, cap_feats: torch.Tensor) -> torch.Tensor:
        """Predict the flow velocity.

        Args:
            x: Latents [batch, channels, frames, height, width]
            t: Normalized timesteps in [0, 1], shape [batch]
            cap_feats: Caption features [batch, cap_len, cap_feat_dim]

        Returns:
            Prediction with the same shape as ``x``
        """
        device = x.device
        adaln_input = self.t_embedder(t * self.config.t_scale).type_as(x)
        key = f"{self.config.patch_size}-{self.config.f_patch_size}"
        outputs = []

        for i in range(x.shape[0]):
            cap = cap_feats[i]
            cap_len = cap.shape[0]
            cap_padded = cap_len + self._pad_len(cap_len)

            tokens, grid = self._patchify(x[i])
            img_len = tokens.shape[0]
            img_pad = self._pad_len(img_len)

            img_ids = self._grid_ids(grid, (cap_padded + 1, 0, 0), device)
            cap_ids = self._grid_ids((cap_padded, 1, 1), (1, 0, 0), device)
            if img_pad:
                img_ids = torch.cat([img_ids, img_ids.new_zeros(img_pad, 3)])

            # Image stream
            img = self.all_x_embedder[key](tokens)
            if img_pad:
                img = torch.cat([img, self.x_pad_token.to(img.dtype).expand(img_pad, -1)])
            img = img.unsqueeze(0)
            img_freqs = self.rope_embedder(img_ids)
            c = adaln_input[i:i + 1]
            for layer in self.noise_refiner:
                img = layer(img, img_freqs, c)

            # Caption stream
            txt = self.cap_embedder(cap.to(img.dtype))
            if cap_padded > cap_len:
                txt = torch.cat([txt, self.cap_pad_token.to(txt.dtype).expand(cap_padded - cap_len, -1)])
            txt = txt.unsqueeze(0)
            txt_freqs = self.rope_embedder(cap_ids)
            for layer in self.context_refiner:
                txt = layer(txt, txt_freqs)

            unified = torch.cat([img, txt], dim=1)
            unified_freqs = torch.cat([img_freqs, txt_freqs], dim=0)
            for layer in self.layers:
                unified = layer(unified, unified_freqs, c)

            out = self.all_final_layer[key](unified, c)[0, :img_len]
            outputs.append(self._unpatchify(out, grid))

        return torch.stack(outputs)


# ============================================================================
# Text encoder
# ============================================================================

class ZImageTextEncoder(nn.Module):
    """Qwen3 stack whose second-to-last hidden state conditions the transformer.

    The last decoder layer and the final norm are never evaluated, which is
    what ``hidden_states[-2]`` of the full model yields.
    """

    def __init__(self, config: LlamaConfig):
        super().__init__()
        self.config = config
        self.model = LlamaModel(config)

    @classmethod
    def from_hf_config(cls, hf_config: Dict[str, Any]) -> "ZImageTextEncoder":
        hf_config = dict(hf_config)
        hf_config.setdefault("model_type", "qwen3")
        return cls(LlamaConfig.from_hf_config(hf_config))

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        """[batch, seq_len] token ids -> [batch, seq_len, hidden] features."""
        return self.model(
            input_ids,
            num_layers=self.config.num_hidden_layers - 1,
            final_norm=False,
        )
