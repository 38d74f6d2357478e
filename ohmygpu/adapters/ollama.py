"""Ollama-style ``/api/chat``, ``/api/generate`` and ``/api/show`` payloads.

Ollama streams by default and frames streams as newline-delimited JSON;
the last object of a stream has ``done: true``.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Tuple, Union

from ohmygpu import __version__
from ohmygpu.adapters.schemas import (
    InvalidRequest,
    OllamaChatRequest,
    OllamaGenerateRequest,
    OllamaShowRequest,
    validate_body,
)
from ohmygpu.errors import GenerationError, LoadError
from ohmygpu.logger import get_logger
from ohmygpu.manager import ModelManager
from ohmygpu.registry import ModelRegistry
from ohmygpu.types import ChatRequest, ChatResponse, ChatToken

logger = get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_chat_request(payload: Dict[str, Any]) -> Tuple[str, ChatRequest]:
    """Body of ``POST /api/chat`` -> (model name, ChatRequest)."""
    body = validate_body(OllamaChatRequest, payload)
    return body.model, body.to_chat_request()


def parse_generate_request(payload: Dict[str, Any]) -> Tuple[str, ChatRequest]:
    """Body of ``POST /api/generate``; the prompt becomes a single user message."""
    body = validate_body(OllamaGenerateRequest, payload)
    return body.model, body.to_chat_request()


def chat_response(response: ChatResponse, model: str) -> Dict[str, Any]:
    return {
        "model": model,
        "created_at": _now(),
        "message": {"role": "assistant", "content": response.content},
        "done": True,
        "eval_count": response.tokens_used,
    }


def chat_chunks(tokens: Iterable[ChatToken], model: str) -> Iterator[Dict[str, Any]]:
    """One object per token; the one carrying a finish reason is ``done``.

    A generation error ends the stream with an error message object.
    """
    try:
        for token in tokens:
            yield {
                "model": model,
                "created_at": _now(),
                "message": {"role": "assistant", "content": token.content},
                "done": token.finish_reason is not None,
            }
    except GenerationError as e:
        logger.error(f"Stream error: {e}")
        yield {
            "model": model,
            "created_at": _now(),
            "message": {"role": "assistant", "content": f"Error: {e}"},
            "done": True,
        }


def ndjson_stream(objects: Iterable[Dict[str, Any]]) -> Iterator[str]:
    for obj in objects:
        yield json.dumps(obj, ensure_ascii=False) + "\n"


def error_body(message: str) -> Dict[str, Any]:
    return {"error": message}


def _details() -> Dict[str, str]:
    return {
        "format": "safetensors",
        "family": "unknown",
        "parameter_size": "unknown",
        "quantization_level": "unknown",
    }


def tags(registry: ModelRegistry) -> Dict[str, Any]:
    """Body of ``GET /api/tags``."""
    models = []
    for info in registry.list():
        models.append({
            "name": info.name,
            "modified_at": _now(),
            "size": info.size_bytes,
            "digest": "sha256:unknown",
            "details": _details(),
        })
    return {"models": models}


def show(registry: ModelRegistry, payload: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
    """Serve ``POST /api/show`` for a registered model.

    Returns:
        (200, model information) or (404, error) for an unknown name
    """
    try:
        name = validate_body(OllamaShowRequest, payload).requested_name
    except InvalidRequest as e:
        return 400, error_body(str(e))

    if registry.get(name) is None:
        return 404, error_body(f"model '{name}' not found")
    return 200, {
        "modelfile": f"FROM {name}",
        "parameters": "",
        "template": "{{ .Prompt }}",
        "details": _details(),
    }


def version() -> Dict[str, Any]:
    return {"version": __version__}


def _serve(
    manager: ModelManager, model: str, request: ChatRequest
) -> Tuple[int, Union[Dict[str, Any], Iterator[str]]]:
    try:
        if request.stream:
            return 200, ndjson_stream(chat_chunks(manager.chat_stream(request, model=model), model))
        return 200, chat_response(manager.chat(request, model=model), model)
    except LoadError as e:
        logger.error(f"Failed to load model {model}: {e}")
        return 400, error_body(f"Failed to load model '{model}': {e}")
    except GenerationError as e:
        logger.error(f"Chat error: {e}")
        return 500, error_body(f"Generation error: {e}")


def handle_chat(
    manager: ModelManager, payload: Dict[str, Any]
) -> Tuple[int, Union[Dict[str, Any], Iterator[str]]]:
    """Serve ``POST /api/chat``; streamed bodies are NDJSON line iterators."""
    try:
        model, request = parse_chat_request(payload)
    except InvalidRequest as e:
        return 400, error_body(str(e))
    return _serve(manager, model, request)


def handle_generate(
    manager: ModelManager, payload: Dict[str, Any]
) -> Tuple[int, Union[Dict[str, Any], Iterator[str]]]:
    """Serve ``POST /api/generate`` through the chat path."""
    try:
        model, request = parse_generate_request(payload)
    except InvalidRequest as e:
        return 400, error_body(str(e))
    return _serve(manager, model, request)
