"""Protocol adapters: payload translation for OpenAI- and Ollama-style APIs."""

from ohmygpu.adapters import ollama, openai

__all__ = ["openai", "ollama"]
