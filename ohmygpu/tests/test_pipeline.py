"""
Z-Image Pipeline Tests
======================

Runs the full validate -> condition -> denoise -> decode path on tiny
random-weight components, counting transformer passes with forward hooks.
"""

import pytest
import torch

from ohmygpu.errors import BackendError, ConfigError, InvalidDimensions
from ohmygpu.runtime.pipeline import (
    PROMPT_TEMPLATE,
    ZImagePipeline,
    format_prompt,
    text_encoder_key_mapping,
)
from ohmygpu.types import ImageGenRequest


@pytest.fixture
def pipeline(byte_tokenizer, tiny_text_encoder, tiny_transformer, tiny_vae):
    """Return a ZImagePipeline built from tiny components."""
    return ZImagePipeline(byte_tokenizer, tiny_text_encoder, tiny_transformer, tiny_vae)


class _Counter:
    def __init__(self, module):
        self.count = 0
        self.handle = module.register_forward_hook(self._hook)

    def _hook(self, module, inputs, output):
        self.count += 1


class TestPrompt:
    """Test caption formatting."""

    def test_template(self):
        assert format_prompt("a cat") == "<|im_start|>user\na cat<|im_end|>\n<|im_start|>assistant\n"
        assert PROMPT_TEMPLATE.count("{prompt}") == 1

    def test_text_encoder_key_mapping(self):
        assert text_encoder_key_mapping("lm_head.weight") is None
        assert text_encoder_key_mapping("layers.0.mlp.up_proj.weight") == "model.layers.0.mlp.up_proj.weight"
        assert text_encoder_key_mapping("model.norm.weight") == "model.norm.weight"


class TestValidation:
    """Test request validation."""

    def test_spatial_alignment(self, pipeline):
        assert pipeline.spatial_alignment == 16

    def test_misaligned_width_fails_before_any_forward(self, pipeline):
        encoder_calls = _Counter(pipeline.text_encoder)
        transformer_calls = _Counter(pipeline.transformer)

        with pytest.raises(InvalidDimensions):
            pipeline.generate(ImageGenRequest(prompt="a fox", width=1000, height=1024))

        assert encoder_calls.count == 0
        assert transformer_calls.count == 0

    @pytest.mark.parametrize("width,height,steps", [(0, 32, 2), (32, -16, 2), (32, 32, 0), (24, 32, 2)])
    def test_rejected_requests(self, pipeline, width, height, steps):
        with pytest.raises(InvalidDimensions):
            pipeline.validate(ImageGenRequest(prompt="x", width=width, height=height, steps=steps))


class TestGenerate:
    """Test end-to-end generation on tiny components."""

    def test_output_shape(self, pipeline):
        response = pipeline.generate(ImageGenRequest(prompt="a fox", width=32, height=48, steps=2, seed=1))
        assert (response.width, response.height) == (32, 48)
        assert len(response.pixels) == 32 * 48 * 3

    def test_seed_reproducible(self, pipeline):
        request = ImageGenRequest(prompt="a fox", width=32, height=32, steps=2, seed=123)
        assert pipeline.generate(request).pixels == pipeline.generate(request).pixels

    def test_no_guidance_one_pass_per_step(self, pipeline):
        counter = _Counter(pipeline.transformer)
        pipeline.generate(ImageGenRequest(
            prompt="a fox", negative_prompt="blurry", width=32, height=32, steps=3, guidance_scale=1.0, seed=0,
        ))
        assert counter.count == 3

    def test_guidance_two_passes_per_step(self, pipeline):
        encoder = _Counter(pipeline.text_encoder)
        counter = _Counter(pipeline.transformer)
        pipeline.generate(ImageGenRequest(
            prompt="a fox", negative_prompt="blurry", width=32, height=32, steps=3, guidance_scale=5.0, seed=0,
        ))
        assert counter.count == 6
        assert encoder.count == 2

    def test_guidance_without_negative_prompt(self, pipeline):
        """Test guidance > 1 with no negative prompt runs only the conditional pass."""
        counter = _Counter(pipeline.transformer)
        pipeline.generate(ImageGenRequest(prompt="a fox", width=32, height=32, steps=2, guidance_scale=5.0))
        assert counter.count == 2

    def test_session_latent_grid(self, pipeline):
        session = pipeline.prepare_session(ImageGenRequest(prompt="a fox", width=64, height=32, steps=4, seed=0))
        assert session.latents.shape == (1, 16, 1, 4, 8)
        assert session.scheduler.num_inference_steps == 4
        assert not session.do_classifier_free_guidance

    def test_forward_failure_is_backend_error(self, pipeline):
        def explode(module, inputs):
            raise RuntimeError("device lost")

        pipeline.transformer.register_forward_pre_hook(explode)
        with pytest.raises(BackendError):
            pipeline.generate(ImageGenRequest(prompt="a fox", width=32, height=32, steps=1))


class TestFromPretrained:
    """Test loading a diffusers-layout directory."""

    def test_round_trip(self, tiny_zimage_dir, pipeline):
        loaded = ZImagePipeline.from_pretrained(tiny_zimage_dir)
        request = ImageGenRequest(prompt="a fox", width=32, height=32, steps=2, seed=7)

        assert loaded.scheduler_config == pipeline.scheduler_config
        assert loaded.generate(request).pixels == pipeline.generate(request).pixels

    def test_missing_vae(self, tiny_zimage_dir):
        (tiny_zimage_dir / "vae" / "diffusion_pytorch_model.safetensors").unlink()
        with pytest.raises(ConfigError):
            ZImagePipeline.from_pretrained(tiny_zimage_dir)

    def test_missing_transformer(self, tiny_zimage_dir):
        (tiny_zimage_dir / "transformer" / "diffusion_pytorch_model.safetensors").unlink()
        with pytest.raises(ConfigError):
            ZImagePipeline.from_pretrained(tiny_zimage_dir)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ConfigError):
            ZImagePipeline.from_pretrained(tmp_path / "nope")


def test_decode_maps_range_to_bytes(tiny_vae, byte_tokenizer, tiny_text_encoder, tiny_transformer):
    """Test decoder output in [-1, 1] maps linearly onto 0..255."""
    pipeline = ZImagePipeline(byte_tokenizer, tiny_text_encoder, tiny_transformer, tiny_vae)
    pipeline.vae.decode = lambda latents: torch.tensor([[[[-1.0, 0.0]], [[1.0, 2.0]], [[0.5, -3.0]]]])
    response = pipeline.decode(torch.zeros(1, 16, 1, 1, 1))
    assert (response.width, response.height) == (2, 1)
    assert list(response.pixels) == [0, 255, 191, 127, 255, 0]
