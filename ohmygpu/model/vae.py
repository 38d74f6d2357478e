"""KL autoencoder decoder (latents -> RGB).

Only the decoder half is built; encoder tensors in the checkpoint are
ignored. Parameter names follow diffusers ``AutoencoderKL``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import torch
import torch.nn as nn
import torch.nn.functional as F


@dataclass
class VaeConfig:
    """Configuration for the autoencoder (defaults: FLUX/Z-Image 16-channel VAE)."""
    in_channels: int = 3
    out_channels: int = 3
    latent_channels: int = 16
    block_out_channels: List[int] = field(default_factory=lambda: [128, 256, 512, 512])
    layers_per_block: int = 2
    norm_num_groups: int = 32
    scaling_factor: float = 0.3611
    shift_factor: Optional[float] = 0.1159
    use_post_quant_conv: bool = False
    mid_block_add_attention: bool = True

    @property
    def scale_factor(self) -> int:
        """Spatial downsampling between pixels and latents."""
        return 2 ** (len(self.block_out_channels) - 1)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "VaeConfig":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in config.items() if k in known})


class ResnetBlock2D(nn.Module):

    def __init__(self, in_channels: int, out_channels: int, groups: int = 32, eps: float = 1e-6):
        super().__init__()
        self.norm1 = nn.GroupNorm(groups, in_channels, eps=eps)
        self.conv1 = nn.Conv2d(in_channels, out_channels, kernel_size=3, padding=1)
        self.norm2 = nn.GroupNorm(groups, out_channels, eps=eps)
        self.conv2 = nn.Conv2d(out_channels, out_channels, kernel_size=3, padding=1)
        self.conv_shortcut = (
            nn.Conv2d(in_channels, out_channels, kernel_size=1) if in_channels != out_channels else None
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        h = self.conv1(F.silu(self.norm1(x)))
        h = self.conv2(F.silu(self.norm2(h)))
        if self.conv_shortcut is not None:
            x = self.conv_shortcut(x)
        return x + h


class VaeAttention(nn.Module):
    """Single-head spatial self-attention with a residual connection."""

    def __init__(self, channels: int, groups: int = 32, eps: float = 1e-6):
        super().__init__()
        self.group_norm = nn.GroupNorm(groups, channels, eps=eps)
        self.to_q = nn.Linear(channels, channels)
        self.to_k = nn.Linear(channels, channels)
        self.to_v = nn.Linear(channels, channels)
        self.to_out = nn.ModuleList([nn.Linear(channels, channels)])

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        b, c, h, w = x.shape
        hidden = self.group_norm(x).view(b, c, h * w).transpose(1, 2)
        q = self.to_q(hidden).unsqueeze(1)
        k = self.to_k(hidden).unsqueeze(1)
        v = self.to_v(hidden).unsqueeze(1)
        out = F.scaled_dot_product_attention(q, k, v).squeeze(1)
        out = self.to_out[0](out)
        return x + out.transpose(1, 2).reshape(b, c, h, w)


class Upsample2D(nn.Module):

    def __init__(self, channels: int):
        super().__init__()
        self.conv = nn.Conv2d(channels, channels, kernel_size=3, padding=1)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        dtype = x.dtype
        # nearest upsampling is not implemented for bfloat16 on every backend
        if dtype == torch.bfloat16:
            x = x.float()
        x = F.interpolate(x, scale_factor=2.0, mode="nearest").to(dtype)
        return self.conv(x)


class UNetMidBlock2D(nn.Module):

    def __init__(self, channels: int, groups: int, add_attention: bool = True):
        super().__init__()
        self.resnets = nn.ModuleList([
            ResnetBlock2D(channels, channels, groups),
            ResnetBlock2D(channels, channels, groups),
        ])
        self.attentions = nn.ModuleList([VaeAttention(channels, groups)]) if add_attention else None

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = self.resnets[0](x)
        if self.attentions is not None:
            x = self.attentions[0](x)
        return self.resnets[1](x)


class UpDecoderBlock2D(nn.Module):

    def __init__(self, in_channels: int, out_channels: int, num_layers: int, groups: int, add_upsample: bool):
        super().__init__()
        self.resnets = nn.ModuleList([
            ResnetBlock2D(in_channels if i == 0 else out_channels, out_channels, groups)
            for i in range(num_layers)
        ])
        self.upsamplers = nn.ModuleList([Upsample2D(out_channels)]) if add_upsample else None

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        for resnet in self.resnets:
            x = resnet(x)
        if self.upsamplers is not None:
            x = self.upsamplers[0](x)
        return x


class Decoder(nn.Module):

    def __init__(self, config: VaeConfig):
        super().__init__()
        channels = list(reversed(config.block_out_channels))
        groups = config.norm_num_groups

        self.conv_in = nn.Conv2d(config.latent_channels, channels[0], kernel_size=3, padding=1)
        self.mid_block = UNetMidBlock2D(channels[0], groups, config.mid_block_add_attention)

        self.up_blocks = nn.ModuleList()
        output_channel = channels[0]
        for i, block_channels in enumerate(channels):
            prev_output_channel = output_channel
            output_channel = block_channels
            self.up_blocks.append(UpDecoderBlock2D(
                prev_output_channel,
                output_channel,
                num_layers=config.layers_per_block + 1,
                groups=groups,
                add_upsample=i < len(channels) - 1,
            ))

        self.conv_norm_out = nn.GroupNorm(groups, config.block_out_channels[0], eps=1e-6)
        self.conv_out = nn.Conv2d(config.block_out_channels[0], config.out_channels, kernel_size=3, padding=1)

    def forward(self, z: torch.Tensor) -> torch.Tensor:
        x = self.conv_in(z)
        x = self.mid_block(x)
        for block in self.up_blocks:
            x = block(x)
        return self.conv_out(F.silu(self.conv_norm_out(x)))


class AutoencoderKL(nn.Module):

    def __init__(self, config: VaeConfig):
        super().__init__()
        self.config = config
        self.decoder = Decoder(config)
        self.post_quant_conv = (
            nn.Conv2d(config.latent_channels, config.latent_channels, kernel_size=1)
            if config.use_post_quant_conv else None
        )

    @property
    def scale_factor(self) -> int:
        return self.config.scale_factor

    def decode(self, latents: torch.Tensor) -> torch.Tensor:
        """Undo latent scaling/shift and decode to pixels in [-1, 1].

        Args:
            latents: [batch, latent_channels, h, w] as produced by the denoiser

        Returns:
            [batch, 3, h * scale_factor, w * scale_factor]
        """
        z = latents / self.config.scaling_factor
        if self.config.shift_factor is not None:
            z = z + self.config.shift_factor
        if self.post_quant_conv is not None:
            z = self.post_quant_conv(z)
        return self.decoder(z)


# Older diffusers checkpoints name the attention projections differently
_LEGACY_ATTENTION_KEYS = {
    ".query.": ".to_q.",
    ".key.": ".to_k.",
    ".value.": ".to_v.",
    ".proj_attn.": ".to_out.0.",
}


def vae_key_mapping(key: str) -> Optional[str]:
    """Checkpoint key -> decoder key; encoder-side tensors are skipped."""
    if key.startswith("encoder.") or key.startswith("quant_conv."):
        return None
    for old, new in _LEGACY_ATTENTION_KEYS.items():
        if old in key:
            key = key.replace(old, new)
    return key
