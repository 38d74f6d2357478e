"""Z-Image text-to-image pipeline.

Stages, in order:

    validate -> condition (text encoder) -> schedule -> denoise -> VAE decode

Each request gets its own DenoisingSession and scheduler, so concurrent
requests under the manager's read lock share only the (read-only) weights.

Usage:
    pipeline = ZImagePipeline.from_pretrained("models/z-image-turbo", device)
    response = pipeline.generate(ImageGenRequest(prompt="a red fox", steps=9))
    response.save("fox.png")
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import torch

from ohmygpu.errors import BackendError, ConfigError, GenerationError, InvalidDimensions
from ohmygpu.logger import get_logger
from ohmygpu.model.loader import get_safetensor_files, load_safetensors_weights, read_json_config
from ohmygpu.model.vae import AutoencoderKL, VaeConfig, vae_key_mapping
from ohmygpu.model.zimage import ZImageConfig, ZImageTextEncoder, ZImageTransformer2DModel
from ohmygpu.runtime.device import is_out_of_memory, seed_generator
from ohmygpu.runtime.scheduler import FlowMatchEulerDiscreteScheduler, SchedulerConfig, calculate_shift
from ohmygpu.runtime.tokenizer import Tokenizer
from ohmygpu.types import ImageGenRequest, ImageGenResponse

logger = get_logger(__name__)

PROMPT_TEMPLATE = "<|im_start|>user\n{prompt}<|im_end|>\n<|im_start|>assistant\n"

# Resolution-dependent shift
BASE_IMAGE_SEQ_LEN = 256
MAX_IMAGE_SEQ_LEN = 4096
BASE_SHIFT = 0.5
MAX_SHIFT = 1.15

# Qwen3-4B caption encoder, used when text_encoder/config.json is absent
DEFAULT_TEXT_ENCODER_CONFIG: Dict[str, Any] = {
    "model_type": "qwen3",
    "vocab_size": 151936,
    "hidden_size": 2560,
    "intermediate_size": 9728,
    "num_hidden_layers": 36,
    "num_attention_heads": 32,
    "num_key_value_heads": 8,
    "head_dim": 128,
    "rms_norm_eps": 1e-6,
    "rope_theta": 1000000.0,
    "tie_word_embeddings": True,
}


def format_prompt(prompt: str) -> str:
    return PROMPT_TEMPLATE.format(prompt=prompt)


def text_encoder_key_mapping(key: str) -> Optional[str]:
    """Qwen3 checkpoint key -> encoder key (the LM head is not used)."""
    if key.startswith("lm_head."):
        return None
    if not key.startswith("model."):
        return "model." + key
    return key


@dataclass
class DenoisingSession:
    """Per-request denoising state.

    Attributes:
        latents: [1, channels, 1, latent_h, latent_w]
        scheduler: Step schedule for this request
        cond: Prompt features [1, cap_len, cap_feat_dim]
        uncond: Negative prompt features, None when guidance is off
        guidance_scale: Classifier-free guidance weight
        transformer_passes: Denoiser forward passes issued so far
    """
    latents: torch.Tensor
    scheduler: FlowMatchEulerDiscreteScheduler
    cond: torch.Tensor
    uncond: Optional[torch.Tensor]
    guidance_scale: float
    transformer_passes: int = 0

    @property
    def do_classifier_free_guidance(self) -> bool:
        return self.uncond is not None


class ZImagePipeline:
    """Z-Image (single-stream DiT) text-to-image pipeline.

    Args:
        tokenizer: Caption tokenizer
        text_encoder: Caption encoder producing transformer conditioning
        transformer: Flow-matching denoiser
        vae: Latent decoder
        device: Device every component lives on
        dtype: Compute dtype of the components
        scheduler_config: Scheduler settings (Z-Image-Turbo defaults if None)
    """

    def __init__(
        self,
        tokenizer: Tokenizer,
        text_encoder: ZImageTextEncoder,
        transformer: ZImageTransformer2DModel,
        vae: AutoencoderKL,
        device: Union[str, torch.device] = "cpu",
        dtype: torch.dtype = torch.float32,
        scheduler_config: Optional[SchedulerConfig] = None,
    ):
        self.tokenizer = tokenizer
        self.text_encoder = text_encoder
        self.transformer = transformer
        self.vae = vae
        self.device = torch.device(device)
        self.dtype = dtype
        self.scheduler_config = scheduler_config or SchedulerConfig()

    @classmethod
    def from_pretrained(
        cls,
        model_path: Union[str, Path],
        device: Union[str, torch.device] = "cpu",
        dtype: torch.dtype = torch.float32,
    ) -> "ZImagePipeline":
        """Load every component from a diffusers-layout model directory.

        Expects ``tokenizer/``, ``text_encoder/``, ``transformer/`` and
        ``vae/`` subdirectories; component configs fall back to the
        Z-Image-Turbo defaults when their ``config.json`` is missing.
        """
        model_path = Path(model_path)
        if not model_path.is_dir():
            raise ConfigError(f"Model directory not found: {model_path}")

        tokenizer = Tokenizer.from_file(model_path / "tokenizer" / "tokenizer.json")

        # Text encoder
        encoder_dir = model_path / "text_encoder"
        encoder_files = get_safetensor_files(encoder_dir) if encoder_dir.is_dir() else []
        if not encoder_files:
            raise ConfigError(f"Text encoder weights not found in {encoder_dir}")
        encoder_config = _optional_config(encoder_dir / "config.json", DEFAULT_TEXT_ENCODER_CONFIG)
        text_encoder = ZImageTextEncoder.from_hf_config(encoder_config).to(device=device, dtype=dtype).eval()
        load_safetensors_weights(
            text_encoder, encoder_files, dtype=dtype,
            key_mapping=text_encoder_key_mapping, desc="Loading text encoder",
        )

        # Transformer
        transformer_dir = model_path / "transformer"
        transformer_files = (
            get_safetensor_files(transformer_dir, stem="diffusion_pytorch_model")
            if transformer_dir.is_dir() else []
        )
        if not transformer_files:
            raise ConfigError(f"Transformer weights not found in {transformer_dir}")
        transformer_config = ZImageConfig.from_dict(_optional_config(transformer_dir / "config.json", {}))
        transformer = ZImageTransformer2DModel(transformer_config).to(device=device, dtype=dtype).eval()
        load_safetensors_weights(transformer, transformer_files, dtype=dtype, desc="Loading transformer")

        # VAE
        vae_dir = model_path / "vae"
        vae_file = vae_dir / "diffusion_pytorch_model.safetensors"
        if not vae_file.is_file():
            raise ConfigError(f"VAE weights not found at {vae_file}")
        vae_config = VaeConfig.from_dict(_optional_config(vae_dir / "config.json", {}))
        vae = AutoencoderKL(vae_config).to(device=device, dtype=dtype).eval()
        load_safetensors_weights(vae, [vae_file], dtype=dtype, key_mapping=vae_key_mapping, desc="Loading VAE")

        scheduler_config = SchedulerConfig.from_pretrained(model_path)
        logger.info(f"Z-Image pipeline ready on {device} ({dtype})")
        return cls(tokenizer, text_encoder, transformer, vae, device, dtype, scheduler_config)

    @property
    def vae_scale_factor(self) -> int:
        return self.vae.scale_factor

    @property
    def spatial_alignment(self) -> int:
        """Pixels per latent patch along each axis."""
        return self.vae.scale_factor * self.transformer.patch_size

    @property
    def latent_channels(self) -> int:
        return self.vae.config.latent_channels

    def validate(self, request: ImageGenRequest) -> None:
        align = self.spatial_alignment
        for label, value in (("width", request.width), ("height", request.height)):
            if value <= 0 or value % align != 0:
                raise InvalidDimensions(
                    f"Image {label} must be a positive multiple of {align}, got {value}"
                )
        if request.steps < 1:
            raise InvalidDimensions(f"steps must be >= 1, got {request.steps}")

    def encode_prompt(self, prompt: str) -> torch.Tensor:
        """Caption features [1, seq_len, cap_feat_dim] for ``prompt``."""
        ids = self.tokenizer.encode(format_prompt(prompt), add_special_tokens=True)
        input_ids = torch.tensor([ids], dtype=torch.long, device=self.device)
        with torch.no_grad():
            return self.text_encoder(input_ids)

    def prepare_session(self, request: ImageGenRequest) -> DenoisingSession:
        """Conditioning, schedule and initial noise for one request."""
        cond = self.encode_prompt(request.prompt)
        uncond = None
        if request.guidance_scale > 1.0 and request.negative_prompt:
            uncond = self.encode_prompt(request.negative_prompt)

        latent_h = request.height // self.vae_scale_factor
        latent_w = request.width // self.vae_scale_factor
        patch = self.transformer.patch_size
        image_seq_len = (latent_h // patch) * (latent_w // patch)
        mu = calculate_shift(image_seq_len, BASE_IMAGE_SEQ_LEN, MAX_IMAGE_SEQ_LEN, BASE_SHIFT, MAX_SHIFT)

        scheduler = FlowMatchEulerDiscreteScheduler(self.scheduler_config)
        scheduler.set_timesteps(request.steps, mu=mu)

        generator = seed_generator(request.seed)
        noise = torch.randn(
            (1, self.latent_channels, latent_h, latent_w), generator=generator, dtype=torch.float32
        )
        # Frame axis expected by the transformer
        latents = noise.to(device=self.device, dtype=self.dtype).unsqueeze(2)

        logger.debug(f"Latent grid {latent_h}x{latent_w}, image_seq_len={image_seq_len}, mu={mu:.4f}")
        return DenoisingSession(
            latents=latents,
            scheduler=scheduler,
            cond=cond,
            uncond=uncond,
            guidance_scale=request.guidance_scale,
        )

    def _predict(self, session: DenoisingSession, t: torch.Tensor, cap_feats: torch.Tensor) -> torch.Tensor:
        session.transformer_passes += 1
        return self.transformer(session.latents, t, cap_feats)

    def denoise(self, session: DenoisingSession) -> torch.Tensor:
        """Run every scheduler step and return the final latents."""
        scheduler = session.scheduler
        with torch.no_grad():
            for _ in range(scheduler.num_inference_steps):
                t = torch.tensor(
                    [scheduler.current_timestep_normalized()], device=self.device, dtype=self.dtype
                )
                pred = self._predict(session, t, session.cond)
                if session.do_classifier_free_guidance:
                    uncond_pred = self._predict(session, t, session.uncond)
                    pred = uncond_pred + session.guidance_scale * (pred - uncond_pred)
                # Z-Image predicts the negated velocity
                pred = -pred
                session.latents = scheduler.step(pred, session.latents)
        return session.latents

    def decode(self, latents: torch.Tensor) -> ImageGenResponse:
        """Latents [1, C, 1, h, w] -> packed RGB response."""
        with torch.no_grad():
            image = self.vae.decode(latents.squeeze(2))
        image = ((image[0].float() / 2 + 0.5).clamp(0, 1) * 255).to(torch.uint8)
        height, width = image.shape[1], image.shape[2]
        pixels = image.permute(1, 2, 0).contiguous().cpu()
        return ImageGenResponse(pixels=pixels.numpy().tobytes(), width=width, height=height)

    def generate(self, request: ImageGenRequest) -> ImageGenResponse:
        """Generate one image.

        Raises:
            InvalidDimensions: Size or step count rejected before any work
            TokenizationError: Prompt could not be encoded
            BackendError: A forward pass or the decode failed
        """
        self.validate(request)
        logger.info(f"Generating {request.width}x{request.height}, steps={request.steps}, "
                    f"guidance={request.guidance_scale}, seed={request.seed}")
        try:
            session = self.prepare_session(request)
            latents = self.denoise(session)
            response = self.decode(latents)
        except GenerationError:
            raise
        except Exception as e:
            if is_out_of_memory(e):
                raise BackendError(f"Device out of memory during image generation: {e}") from e
            raise BackendError(f"Image generation failed: {e}") from e
        logger.info(f"Done: {session.transformer_passes} transformer passes")
        return response


def _optional_config(path: Path, default: Dict[str, Any]) -> Dict[str, Any]:
    if path.is_file():
        return read_json_config(path)
    logger.debug(f"{path} not found, using defaults")
    return dict(default)
