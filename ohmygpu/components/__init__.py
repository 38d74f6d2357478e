"""Layers shared by the text decoders and the image text encoder."""

from .normalization import RMSNorm
from .rope import RotaryEmbedding, rotate_half
from .mlp import SwiGLUMLP, GeluMLP

__all__ = [
    "RMSNorm",
    "RotaryEmbedding",
    "rotate_half",
    "SwiGLUMLP",
    "GeluMLP",
]
