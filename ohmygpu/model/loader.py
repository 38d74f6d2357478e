"""Read Hugging Face style checkpoints into ohmygpu modules.

Handles single-file, index-sharded and glob-sharded safetensors layouts
for both transformers (``model*.safetensors``) and diffusers
(``diffusion_pytorch_model*.safetensors``) directories.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import torch
import torch.nn as nn
from safetensors import safe_open
from tqdm import tqdm

from ohmygpu.errors import ConfigError
from ohmygpu.logger import get_logger

logger = get_logger(__name__)

# Maps a checkpoint key to a module key; returning None skips the tensor
KeyMapping = Callable[[str], Optional[str]]


def read_json_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a JSON config file, raising ConfigError on absence or bad JSON."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Config not found: {path}")
    try:
        with open(path, "r") as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"Expected a JSON object in {path}")
    return config


def get_safetensor_files(model_path: Path, stem: str = "model") -> List[Path]:
    """Get list of safetensor files in a model directory.

    Lookup order: ``{stem}.safetensors``, ``{stem}.safetensors.index.json``,
    ``{stem}-*.safetensors``, then any ``*.safetensors`` file.

    Args:
        model_path: Path to model directory
        stem: File name stem ("model" or "diffusion_pytorch_model")

    Returns:
        Sorted list of paths (empty if nothing matched)
    """
    model_path = Path(model_path)
    single_file = model_path / f"{stem}.safetensors"
    if single_file.exists():
        return [single_file]

    index_file = model_path / f"{stem}.safetensors.index.json"
    if index_file.exists():
        index = read_json_config(index_file)
        weight_files = {model_path / filename for filename in index.get("weight_map", {}).values()}
        missing = [p for p in weight_files if not p.exists()]
        if missing:
            raise ConfigError(f"Shards listed in {index_file.name} are missing: {sorted(missing)}")
        return sorted(weight_files)

    pattern_files = sorted(model_path.glob(f"{stem}-*.safetensors"))
    if pattern_files:
        return pattern_files

    return sorted(model_path.glob("*.safetensors"))


def weights_size_bytes(files: Sequence[Path]) -> int:
    return sum(Path(f).stat().st_size for f in files)


def strip_prefix(*prefixes: str) -> KeyMapping:
    """Key mapping that drops the first matching prefix."""
    def mapping(key: str) -> Optional[str]:
        for prefix in prefixes:
            if key.startswith(prefix):
                return key[len(prefix):]
        return key
    return mapping


@dataclass
class LoadReport:
    loaded: int = 0
    mismatched: List[Tuple[str, Tuple[int, ...], Tuple[int, ...]]] = field(default_factory=list)
    unexpected: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


def load_safetensors_weights(
    model: nn.Module,
    files: Sequence[Path],
    dtype: Optional[torch.dtype] = None,
    key_mapping: Optional[KeyMapping] = None,
    strict: bool = True,
    desc: str = "Loading weights",
) -> LoadReport:
    """Copy checkpoint tensors into a module's parameters and buffers.

    Floating-point tensors are cast to ``dtype`` (the module's own dtype if
    None). Tensors are copied in place, so the module must already live on
    its target device.

    Args:
        model: Destination module
        files: Safetensors files
        dtype: Target dtype for floating-point tensors
        key_mapping: Optional checkpoint-key -> module-key translation
        strict: Raise ConfigError on shape mismatches or missing parameters
        desc: Progress bar label

    Returns:
        LoadReport with counts and problem keys
    """
    if not files:
        raise ConfigError("No safetensors weight files given")

    params = dict(model.named_parameters())
    buffers = dict(model.named_buffers())
    seen = set()
    report = LoadReport()

    for file_path in tqdm(files, desc=desc, disable=len(files) < 2):
        with safe_open(str(file_path), framework="pt", device="cpu") as f:
            for ckpt_key in f.keys():
                key = key_mapping(ckpt_key) if key_mapping is not None else ckpt_key
                if key is None:
                    continue
                target = params.get(key)
                if target is None:
                    target = buffers.get(key)
                if target is None:
                    report.unexpected.append(ckpt_key)
                    continue

                tensor = f.get_tensor(ckpt_key)
                if tuple(target.shape) != tuple(tensor.shape):
                    report.mismatched.append((key, tuple(target.shape), tuple(tensor.shape)))
                    continue
                if tensor.is_floating_point():
                    tensor = tensor.to(dtype if dtype is not None else target.dtype)
                with torch.no_grad():
                    target.data.copy_(tensor)
                seen.add(key)
                report.loaded += 1

    report.missing = [name for name in params if name not in seen]

    logger.info(f"{desc}: {report.loaded} tensors from {len(files)} file(s)")
    if report.unexpected:
        logger.debug(f"  {len(report.unexpected)} unused checkpoint keys (first 5): {report.unexpected[:5]}")
    if report.mismatched:
        for key, model_shape, ckpt_shape in report.mismatched[:5]:
            logger.warning(f"  shape mismatch {key}: model{model_shape} vs checkpoint{ckpt_shape}")
    if report.missing:
        logger.warning(f"  {len(report.missing)} parameters not in checkpoint (first 5): {report.missing[:5]}")

    if report.loaded == 0:
        raise ConfigError(f"No tensors in {[p.name for p in files]} matched the model")
    if strict and (report.mismatched or report.missing):
        raise ConfigError(
            f"Checkpoint does not fit the model: {len(report.mismatched)} shape mismatches, "
            f"{len(report.missing)} missing parameters"
        )
    return report
