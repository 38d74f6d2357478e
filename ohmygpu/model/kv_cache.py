"""
Decode cache for autoregressive generation
==========================================

Holds the keys/values every attention layer has produced so far in one
generation call. The first forward pass fills it with the whole prompt,
each later pass appends one position. A cache belongs to exactly one
GenerationSession and is dropped with it.
"""

from typing import List, Optional, Tuple

import torch


class KVCache:
    """Growable per-layer key/value cache.

    Each layer entry has shape [batch, num_kv_heads, seq_len, head_dim].

    Args:
        num_layers: Number of attention layers
    """

    def __init__(self, num_layers: int):
        self.num_layers = num_layers
        self._layers: List[Optional[Tuple[torch.Tensor, torch.Tensor]]] = [None] * num_layers

    @property
    def seq_len(self) -> int:
        """Number of cached positions (0 when empty)."""
        first = self._layers[0] if self.num_layers else None
        return 0 if first is None else first[0].shape[2]

    def get(self, layer_idx: int) -> Optional[Tuple[torch.Tensor, torch.Tensor]]:
        return self._layers[layer_idx]

    def update(
        self,
        layer_idx: int,
        new_k: torch.Tensor,
        new_v: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Append new keys/values for a layer and return the full history.

        Args:
            layer_idx: Layer index
            new_k: New keys [batch, kv_heads, seq_len, head_dim]
            new_v: New values [batch, kv_heads, seq_len, head_dim]

        Returns:
            (k, v) covering every cached position plus the new ones
        """
        cached = self._layers[layer_idx]
        if cached is not None:
            new_k = torch.cat([cached[0], new_k], dim=2)
            new_v = torch.cat([cached[1], new_v], dim=2)
        self._layers[layer_idx] = (new_k, new_v)
        return new_k, new_v

    def clear(self) -> None:
        self._layers = [None] * self.num_layers

    def __len__(self) -> int:
        return self.seq_len
