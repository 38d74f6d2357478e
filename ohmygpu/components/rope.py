"""Rotary Position Embedding (RoPE)."""

from typing import Optional, Tuple

import torch
import torch.nn as nn


def rotate_half(x: torch.Tensor) -> torch.Tensor:
    """[x1, x2] -> [-x2, x1] over the last dimension."""
    x1, x2 = x.chunk(2, dim=-1)
    return torch.cat([-x2, x1], dim=-1)


class RotaryEmbedding(nn.Module):
    """Rotary position embedding in the "rotate half" layout.

    Supports partial rotation (Phi rotates only the leading ``rotary_dim``
    channels of each head and passes the rest through). Angles are computed
    for the requested positions on every call, so there is no upper bound
    on the sequence length.

    Args:
        head_dim: Dimension of each attention head
        rotary_dim: Number of leading channels to rotate (defaults to head_dim)
        base: Base for the exponential decay of rotation angles

    Reference:
        https://arxiv.org/abs/2104.09864
    """

    def __init__(self, head_dim: int, rotary_dim: Optional[int] = None, base: float = 10000.0):
        super().__init__()
        rotary_dim = rotary_dim or head_dim
        if rotary_dim % 2 != 0 or rotary_dim > head_dim:
            raise ValueError(f"rotary_dim must be even and <= head_dim, got {rotary_dim}")
        self.head_dim = head_dim
        self.rotary_dim = rotary_dim
        self.base = base

        inv_freq = 1.0 / (base ** (torch.arange(0, rotary_dim, 2, dtype=torch.float32) / rotary_dim))
        self.register_buffer("inv_freq", inv_freq, persistent=False)

    def cos_sin(self, positions: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """cos/sin tables of shape [batch, 1, seq_len, rotary_dim]."""
        freqs = positions.to(torch.float32).unsqueeze(-1) * self.inv_freq.float()
        emb = torch.cat([freqs, freqs], dim=-1)
        return emb.cos().unsqueeze(1), emb.sin().unsqueeze(1)

    def forward(
        self,
        positions: torch.Tensor,
        q: torch.Tensor,
        k: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Rotate q and k.

        Args:
            positions: Position indices [batch_size, seq_len]
            q: Query tensor [batch_size, num_heads, seq_len, head_dim]
            k: Key tensor [batch_size, num_kv_heads, seq_len, head_dim]

        Returns:
            Tuple of (rotated_q, rotated_k)
        """
        cos, sin = self.cos_sin(positions)
        return self._rotate(q, cos, sin), self._rotate(k, cos, sin)

    def _rotate(self, x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
        dtype = x.dtype
        x_rot, x_pass = x[..., :self.rotary_dim], x[..., self.rotary_dim:]
        x_rot = x_rot.float()
        x_rot = x_rot * cos + rotate_half(x_rot) * sin
        return torch.cat([x_rot.to(dtype), x_pass], dim=-1)

    def extra_repr(self) -> str:
        return f"head_dim={self.head_dim}, rotary_dim={self.rotary_dim}, base={self.base}"
