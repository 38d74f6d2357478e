"""Device selection and memory housekeeping for runtimes."""

import gc
from typing import Optional, Sequence

import torch

from ohmygpu.errors import LoadError
from ohmygpu.logger import get_logger
from ohmygpu.model.loader import weights_size_bytes

logger = get_logger(__name__)


def select_device(gpu_id: Optional[int] = None, use_gpu: bool = True) -> torch.device:
    """Pick the inference device.

    CUDA (``cuda:<gpu_id>``) when available, then Apple MPS, then CPU.

    Args:
        gpu_id: CUDA device ordinal (None means device 0)
        use_gpu: Force CPU when False

    Returns:
        Selected torch.device
    """
    if use_gpu and torch.cuda.is_available():
        index = gpu_id or 0
        if index >= torch.cuda.device_count():
            raise LoadError(f"GPU {index} requested but only {torch.cuda.device_count()} CUDA device(s) present")
        return torch.device(f"cuda:{index}")
    mps = getattr(torch.backends, "mps", None)
    if use_gpu and mps is not None and mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def default_dtype(device: torch.device) -> torch.dtype:
    """bfloat16 on CUDA, float32 on MPS and CPU."""
    return torch.bfloat16 if device.type == "cuda" else torch.float32


def configure_cpu_threads(cpu_threads: Optional[int]) -> None:
    if cpu_threads:
        torch.set_num_threads(cpu_threads)
        logger.info(f"Using {torch.get_num_threads()} CPU threads")


def check_vram_budget(files: Sequence, vram_budget_mb: Optional[int], dtype: torch.dtype) -> None:
    """Refuse to load weights that cannot fit the configured budget.

    The estimate is the on-disk size scaled by the load dtype (checkpoints
    are assumed to be stored in 16-bit).
    """
    if not vram_budget_mb:
        return
    itemsize = torch.tensor([], dtype=dtype).element_size()
    estimate_mb = weights_size_bytes(files) * itemsize / 2 / (1024 * 1024)
    if estimate_mb > vram_budget_mb:
        raise LoadError(
            f"Model needs about {estimate_mb:.0f} MB but the VRAM budget is {vram_budget_mb} MB"
        )
    logger.debug(f"Estimated weights {estimate_mb:.0f} MB within budget {vram_budget_mb} MB")


def is_out_of_memory(exc: BaseException) -> bool:
    if isinstance(exc, torch.cuda.OutOfMemoryError):
        return True
    return isinstance(exc, RuntimeError) and "out of memory" in str(exc).lower()


def release_memory(device: Optional[torch.device] = None) -> None:
    """Collect garbage and return cached allocator blocks to the driver."""
    gc.collect()
    if device is not None and device.type == "cuda" and torch.cuda.is_available():
        torch.cuda.empty_cache()
    elif device is not None and device.type == "mps":
        mps = getattr(torch, "mps", None)
        if mps is not None and hasattr(mps, "empty_cache"):
            mps.empty_cache()


def seed_generator(seed: Optional[int]) -> Optional[torch.Generator]:
    """Generator for reproducible noise, or None for the global RNG."""
    if seed is None:
        return None
    # Draw noise on CPU so a seed gives the same image on every device
    generator = torch.Generator(device="cpu")
    generator.manual_seed(seed)
    return generator
