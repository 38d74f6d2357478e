"""OpenAI-style chat completions payloads.

Translates ``/v1/chat/completions`` request bodies into ChatRequest and
renders responses, stream chunks and errors back into the OpenAI JSON
shapes. Streams are framed as server-sent events and terminated with
``data: [DONE]``. The HTTP transport itself lives elsewhere.
"""

import json
import time
import uuid
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple, Union

from ohmygpu.adapters.schemas import ChatCompletionRequest, InvalidRequest, validate_body
from ohmygpu.errors import GenerationError, LoadError
from ohmygpu.logger import get_logger
from ohmygpu.manager import ModelManager
from ohmygpu.registry import ModelRegistry
from ohmygpu.types import ChatRequest, ChatResponse, ChatToken

logger = get_logger(__name__)

DONE_EVENT = "data: [DONE]\n\n"


def _completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def parse_chat_request(payload: Dict[str, Any]) -> Tuple[str, ChatRequest]:
    """Body of ``POST /v1/chat/completions`` -> (model name, ChatRequest).

    Raises:
        InvalidRequest: Missing fields, wrong types or out-of-range sampling values
    """
    body = validate_body(ChatCompletionRequest, payload)
    return body.model, body.to_chat_request()


def chat_completion(
    response: ChatResponse,
    model: str,
    completion_id: Optional[str] = None,
    created: Optional[int] = None,
) -> Dict[str, Any]:
    return {
        "id": completion_id or _completion_id(),
        "object": "chat.completion",
        "created": created if created is not None else int(time.time()),
        "model": model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": response.content},
            "finish_reason": response.finish_reason,
        }],
        "usage": {
            "prompt_tokens": 0,
            "completion_tokens": response.tokens_used,
            "total_tokens": response.tokens_used,
        },
    }


def _chunk(completion_id: str, created: int, model: str, delta: Dict[str, Any],
           finish_reason: Optional[str] = None) -> Dict[str, Any]:
    choice: Dict[str, Any] = {"index": 0, "delta": delta}
    if finish_reason is not None:
        choice["finish_reason"] = finish_reason
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [choice],
    }


def chat_completion_chunks(tokens: Iterable[ChatToken], model: str) -> Iterator[Dict[str, Any]]:
    """Stream chunks: a role-only chunk, then one chunk per token.

    Empty deltas carry no ``content`` key.
    """
    completion_id = _completion_id()
    created = int(time.time())
    yield _chunk(completion_id, created, model, {"role": "assistant"})
    for token in tokens:
        delta = {"content": token.content} if token.content else {}
        yield _chunk(completion_id, created, model, delta, token.finish_reason)


def sse_event(data: Union[Dict[str, Any], str]) -> str:
    if not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False)
    return f"data: {data}\n\n"


def sse_stream(chunks: Iterable[Dict[str, Any]]) -> Iterator[str]:
    """Frame chunks as server-sent events, always ending with ``[DONE]``.

    A generation error mid-stream is logged and ends the stream.
    """
    try:
        for chunk in chunks:
            yield sse_event(chunk)
    except GenerationError as e:
        logger.error(f"Stream error: {e}")
    yield DONE_EVENT


def error_body(message: str, error_type: str = "server_error") -> Dict[str, Any]:
    return {"error": {"message": message, "type": error_type}}


def list_models(registry: ModelRegistry) -> Dict[str, Any]:
    """Body of ``GET /v1/models``."""
    return {
        "object": "list",
        "data": [{"id": info.name, "object": "model", "owned_by": "user"} for info in registry.list()],
    }


def handle_chat_completion(
    manager: ModelManager, payload: Dict[str, Any]
) -> Tuple[int, Union[Dict[str, Any], Iterator[str]]]:
    """Serve one chat completion request.

    Returns:
        (HTTP status, body) where body is a JSON dict, or an iterator of
        SSE lines for streamed requests
    """
    try:
        model, request = parse_chat_request(payload)
    except InvalidRequest as e:
        return 400, error_body(str(e), "invalid_request_error")

    try:
        if request.stream:
            stream = manager.chat_stream(request, model=model)
            return 200, sse_stream(chat_completion_chunks(stream, model))
        return 200, chat_completion(manager.chat(request, model=model), model)
    except LoadError as e:
        logger.error(f"Failed to load model {model}: {e}")
        return 400, error_body(f"Failed to load model '{model}': {e}", "invalid_request_error")
    except GenerationError as e:
        logger.error(f"Chat error: {e}")
        return 500, error_body(f"Generation error: {e}")
