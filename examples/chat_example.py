#!/usr/bin/env python3
"""
Interactive chat against a local text model.

Loads a transformers-layout directory (config.json, tokenizer.json and
safetensors weights) through the ModelManager and streams replies token
by token.

Usage:
    python chat_example.py --model-path ~/.config/ohmygpu/models/qwen3-0.6b
    python chat_example.py --model-path ./phi-2 --no-stream --max-tokens 128
"""

import argparse
import sys
from pathlib import Path

from ohmygpu import (
    ChatMessage,
    ChatRequest,
    GenerationError,
    LoadError,
    ModelInfo,
    ModelManager,
    ModelRegistry,
    ModelType,
    Settings,
    setup_logging,
)


def main():
    parser = argparse.ArgumentParser(
        description="ohmygpu interactive chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  /reset   start a new conversation
  /quit    exit
        """,
    )
    parser.add_argument("--model-path", type=str, required=True, help="Model directory")
    parser.add_argument("--system", type=str, default=None, help="Optional system prompt")
    parser.add_argument("--max-tokens", type=int, default=512, help="Maximum generated tokens per reply")
    parser.add_argument("--temperature", type=float, default=0.7, help="Sampling temperature")
    parser.add_argument("--top-p", type=float, default=0.9, help="Nucleus sampling mass")
    parser.add_argument("--seed", type=int, default=None, help="Sampler seed")
    parser.add_argument("--cpu", action="store_true", help="Do not use a GPU")
    parser.add_argument("--no-stream", action="store_true", help="Print each reply at once")
    parser.add_argument("--log-level", type=str, default="WARNING", help="ohmygpu log level")
    args = parser.parse_args()

    setup_logging(args.log_level)

    model_path = Path(args.model_path).expanduser()
    name = model_path.name
    settings = Settings.load()
    settings.inference.use_gpu = not args.cpu
    registry = ModelRegistry([ModelInfo(name, model_path, ModelType.LLM)])
    manager = ModelManager(registry, settings)

    print("=" * 60)
    print(f"ohmygpu chat: {name}")
    print("=" * 60)

    try:
        manager.ensure_loaded(name)
    except LoadError as e:
        print(f"Failed to load model: {e}")
        sys.exit(1)

    history = [ChatMessage("system", args.system)] if args.system else []
    print("Type /quit to exit, /reset to clear the conversation")
    print("-" * 60)

    while True:
        try:
            user_input = input("\nYou: ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if not user_input:
            continue
        if user_input == "/quit":
            break
        if user_input == "/reset":
            history = history[:1] if args.system else []
            print("(conversation cleared)")
            continue

        history.append(ChatMessage("user", user_input))
        request = ChatRequest(
            messages=list(history),
            max_tokens=args.max_tokens,
            temperature=args.temperature,
            top_p=args.top_p,
            stream=not args.no_stream,
            seed=args.seed,
        )

        print("Assistant: ", end="", flush=True)
        try:
            if request.stream:
                pieces = []
                with manager.chat_stream(request) as stream:
                    for token in stream:
                        print(token.content, end="", flush=True)
                        pieces.append(token.content)
                reply = "".join(pieces)
                print()
            else:
                response = manager.chat(request)
                reply = response.content
                print(f"{reply}\n[{response.tokens_used} tokens, finish: {response.finish_reason}]")
        except GenerationError as e:
            print(f"\nGeneration failed: {e}")
            history.pop()
            continue
        history.append(ChatMessage("assistant", reply))

    manager.unload()


if __name__ == "__main__":
    main()
