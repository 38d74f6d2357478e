"""Token sampling for autoregressive generation.

Temperature scaling, optional nucleus (top-p) truncation, then a draw from
a seeded xorshift64 generator. The generator is owned by the sampler, so a
given seed and logits sequence always yields the same tokens regardless
of torch's global RNG.
"""

from typing import Optional, Tuple

import torch

from ohmygpu.types import DEFAULT_SEED

MIN_TEMPERATURE = 0.001

_U64_MASK = (1 << 64) - 1
_U64_MAX = float(_U64_MASK)
# xorshift has an all-zero fixed point
_ZERO_SEED_REPLACEMENT = 0x9E3779B97F4A7C15


class XorShift64:
    """Marsaglia xorshift64 generator (shifts 13, 7, 17)."""

    def __init__(self, seed: int = DEFAULT_SEED):
        self.seed = seed
        self.state = (seed & _U64_MASK) or _ZERO_SEED_REPLACEMENT

    def next_u64(self) -> int:
        x = self.state
        x ^= (x << 13) & _U64_MASK
        x ^= x >> 7
        x ^= (x << 17) & _U64_MASK
        self.state = x
        return x

    def next_float(self) -> float:
        """Uniform draw in [0, 1], rounded to float32 precision."""
        return float(torch.tensor(self.next_u64() / _U64_MAX, dtype=torch.float32))


def softmax_with_temperature(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    """float32 probabilities of ``logits / max(temperature, 0.001)``.

    The maximum is subtracted before exponentiating.
    """
    scaled = logits.to(torch.float32) / max(temperature, MIN_TEMPERATURE)
    scaled = scaled - scaled.max()
    exp = torch.exp(scaled)
    return exp / exp.sum()


def nucleus(probs: torch.Tensor, top_p: float) -> Tuple[torch.Tensor, torch.Tensor]:
    """Smallest descending-probability prefix whose mass reaches ``top_p``.

    Args:
        probs: Probabilities [vocab_size]
        top_p: Mass to keep, in (0, 1]

    Returns:
        (token indices, renormalized probabilities), most likely first
    """
    sorted_probs, sorted_indices = torch.sort(probs, descending=True, stable=True)
    cumsum = torch.cumsum(sorted_probs, dim=-1)
    reached = torch.nonzero(cumsum >= top_p)
    cutoff = int(reached[0, 0]) + 1 if reached.numel() else probs.numel()
    kept = sorted_probs[:cutoff]
    return sorted_indices[:cutoff], kept / kept.sum()


class Sampler:
    """Seeded temperature / top-p sampler.

    Args:
        temperature: Softmax temperature (floored at 0.001)
        top_p: Nucleus mass; 1.0 samples from the full distribution
        seed: Generator seed (None uses the default seed 42)
    """

    def __init__(self, temperature: float = 0.7, top_p: float = 0.9, seed: Optional[int] = None):
        self.temperature = max(temperature, MIN_TEMPERATURE)
        self.top_p = top_p
        self.seed = DEFAULT_SEED if seed is None else seed
        self._rng = XorShift64(self.seed)

    def sample(self, logits: torch.Tensor) -> int:
        """Sample a token id.

        Args:
            logits: Logits of shape [vocab_size] or [1, vocab_size]

        Returns:
            Sampled token index. Malformed logits (NaN, all -inf) yield the
            last candidate instead of raising.
        """
        if logits.dim() == 2:
            logits = logits[0]
        logits = logits.detach().to("cpu")

        probs = softmax_with_temperature(logits, self.temperature)
        r = self._rng.next_float()

        if not bool(torch.isfinite(probs).all()):
            return probs.numel() - 1

        if self.top_p < 1.0:
            candidates, probs = nucleus(probs, self.top_p)
        else:
            candidates = None

        cumsum = torch.cumsum(probs, dim=-1)
        idx = int(torch.searchsorted(cumsum, torch.tensor([r], dtype=cumsum.dtype), right=True)[0])
        idx = min(idx, probs.numel() - 1)
        return int(candidates[idx]) if candidates is not None else idx

    def reset(self) -> None:
        """Restart the generator from the original seed."""
        self._rng = XorShift64(self.seed)
