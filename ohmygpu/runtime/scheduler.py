"""Flow-matching Euler scheduler.

Produces the sigma schedule for a rectified-flow denoiser and advances the
latent with explicit Euler steps:

    x_next = x + (sigma_next - sigma) * velocity

The schedule is shifted towards high noise, either statically by ``shift``
or dynamically by ``mu`` (derived from the image token count, so larger
images spend more steps at high noise).
"""

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import torch

from ohmygpu.model.loader import read_json_config


def calculate_shift(
    image_seq_len: int,
    base_seq_len: int = 256,
    max_seq_len: int = 4096,
    base_shift: float = 0.5,
    max_shift: float = 1.15,
) -> float:
    """Linear interpolation of the shift ``mu`` between two sequence lengths."""
    m = (max_shift - base_shift) / (max_seq_len - base_seq_len)
    b = base_shift - m * base_seq_len
    return image_seq_len * m + b


def time_shift(mu: float, sigmas: torch.Tensor) -> torch.Tensor:
    return math.exp(mu) / (math.exp(mu) + (1.0 / sigmas - 1.0))


@dataclass
class SchedulerConfig:
    """Scheduler configuration (defaults: Z-Image-Turbo)."""
    num_train_timesteps: int = 1000
    shift: float = 3.0
    use_dynamic_shifting: bool = True

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "SchedulerConfig":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in config.items() if k in known})

    @classmethod
    def from_pretrained(cls, model_path: Union[str, Path]) -> "SchedulerConfig":
        """Read ``scheduler/scheduler_config.json`` if present, else defaults."""
        path = Path(model_path) / "scheduler" / "scheduler_config.json"
        if path.is_file():
            return cls.from_dict(read_json_config(path))
        return cls()


class FlowMatchEulerDiscreteScheduler:
    """Euler scheduler for flow-matching models.

    Args:
        config: Scheduler configuration
    """

    def __init__(self, config: Optional[SchedulerConfig] = None):
        self.config = config or SchedulerConfig()
        n = self.config.num_train_timesteps
        sigmas = torch.linspace(1.0, n, n, dtype=torch.float64).flip(0) / n
        if not self.config.use_dynamic_shifting:
            sigmas = self._static_shift(sigmas)
        self.sigma_max = float(sigmas[0])
        self.sigma_min = float(sigmas[-1])
        self.timesteps = (sigmas * n).float()
        self.sigmas = torch.cat([sigmas.float(), torch.zeros(1)])
        self.step_index = 0
        self.num_inference_steps: Optional[int] = None

    def _static_shift(self, sigmas: torch.Tensor) -> torch.Tensor:
        shift = self.config.shift
        return shift * sigmas / (1 + (shift - 1) * sigmas)

    def set_timesteps(self, num_inference_steps: int, mu: Optional[float] = None) -> None:
        """Build the inference schedule and rewind to the first step.

        Args:
            num_inference_steps: Number of denoising steps
            mu: Resolution-dependent shift, required for dynamic shifting
        """
        if num_inference_steps < 1:
            raise ValueError(f"num_inference_steps must be >= 1, got {num_inference_steps}")
        n = self.config.num_train_timesteps
        sigmas = torch.linspace(self.sigma_max, self.sigma_min, num_inference_steps, dtype=torch.float64)

        if self.config.use_dynamic_shifting:
            if mu is None:
                raise ValueError("mu is required when use_dynamic_shifting is enabled")
            sigmas = time_shift(mu, sigmas)
        else:
            sigmas = self._static_shift(sigmas)

        self.num_inference_steps = num_inference_steps
        self.timesteps = (sigmas * n).float()
        self.sigmas = torch.cat([sigmas.float(), torch.zeros(1)])
        self.step_index = 0

    @property
    def current_timestep(self) -> float:
        return float(self.timesteps[self.step_index])

    def current_timestep_normalized(self) -> float:
        """Denoiser time input: 0 at pure noise, approaching 1 when clean."""
        n = self.config.num_train_timesteps
        return (n - self.current_timestep) / n

    def step(self, model_output: torch.Tensor, sample: torch.Tensor) -> torch.Tensor:
        """Advance ``sample`` one Euler step along ``model_output``.

        Computed in float32 and cast back to the output dtype.
        """
        if self.num_inference_steps is None:
            raise RuntimeError("set_timesteps() must be called before step()")
        if self.step_index >= self.num_inference_steps:
            raise RuntimeError("scheduler already finished")
        sigma = self.sigmas[self.step_index]
        sigma_next = self.sigmas[self.step_index + 1]
        prev_sample = sample.float() + (sigma_next - sigma) * model_output.float()
        self.step_index += 1
        return prev_sample.to(model_output.dtype)
