#!/usr/bin/env python3
"""
Text-to-image generation with a local Z-Image model.

Expects a diffusers-layout directory (tokenizer/, text_encoder/,
transformer/, vae/). Width and height must be multiples of 16.

Usage:
    python image_example.py --model-path ./Z-Image-Turbo --prompt "a red fox in the snow"
    python image_example.py --model-path ./Z-Image-Turbo --prompt "a lighthouse" \\
        --negative-prompt "blurry" --guidance 4.0 --steps 20 --seed 7 --output lighthouse.png
"""

import argparse
import sys
import time
from pathlib import Path

from ohmygpu import (
    GenerationError,
    ImageGenRequest,
    LoadError,
    ModelInfo,
    ModelManager,
    ModelRegistry,
    ModelType,
    Settings,
    setup_logging,
)


def main():
    parser = argparse.ArgumentParser(description="ohmygpu text-to-image")
    parser.add_argument("--model-path", type=str, required=True, help="Diffusion model directory")
    parser.add_argument("--prompt", type=str, required=True, help="What to draw")
    parser.add_argument("--negative-prompt", type=str, default=None, help="What to steer away from")
    parser.add_argument("--width", type=int, default=1024, help="Image width (multiple of 16)")
    parser.add_argument("--height", type=int, default=1024, help="Image height (multiple of 16)")
    parser.add_argument("--steps", type=int, default=9, help="Denoising steps")
    parser.add_argument("--guidance", type=float, default=5.0, help="Classifier-free guidance scale")
    parser.add_argument("--seed", type=int, default=None, help="Noise seed")
    parser.add_argument("--output", type=str, default="output.png", help="Output image path")
    parser.add_argument("--cpu", action="store_true", help="Do not use a GPU")
    parser.add_argument("--vram-budget-mb", type=int, default=None, help="Refuse models larger than this")
    args = parser.parse_args()

    setup_logging("INFO")

    model_path = Path(args.model_path).expanduser()
    name = model_path.name
    settings = Settings.load()
    settings.inference.use_gpu = not args.cpu
    if args.vram_budget_mb is not None:
        settings.runtime.vram_budget_mb = args.vram_budget_mb

    manager = ModelManager(ModelRegistry([ModelInfo(name, model_path, ModelType.IMAGE_GENERATION)]), settings)
    try:
        manager.ensure_loaded(name)
    except LoadError as e:
        print(f"Failed to load model: {e}")
        sys.exit(1)

    request = ImageGenRequest(
        prompt=args.prompt,
        negative_prompt=args.negative_prompt,
        width=args.width,
        height=args.height,
        steps=args.steps,
        guidance_scale=args.guidance,
        seed=args.seed,
    )

    start = time.perf_counter()
    try:
        image = manager.generate_image(request)
    except GenerationError as e:
        print(f"Generation failed: {e}")
        sys.exit(1)
    elapsed = time.perf_counter() - start

    path = image.save(args.output)
    print(f"Saved {image.width}x{image.height} image to {path} ({elapsed:.1f}s)")
    manager.unload()


if __name__ == "__main__":
    main()
