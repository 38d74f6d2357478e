"""Request bodies accepted by the OpenAI- and Ollama-style endpoints.

Payloads are validated with pydantic before they are turned into a
ChatRequest; any ``ValidationError`` surfaces as ``InvalidRequest`` so the
handlers can answer 400.
"""

from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ohmygpu.types import ChatMessage, ChatRequest

DEFAULT_MAX_TOKENS = 2048
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.9

Body = TypeVar("Body", bound=BaseModel)


class InvalidRequest(ValueError):
    """Request body is missing fields or has the wrong shape."""


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        parts.append(f"'{location}': {item['msg']}" if location else item["msg"])
    return "; ".join(parts)


def validate_body(schema: Type[Body], payload: Any) -> Body:
    """Validate a decoded JSON body against ``schema``.

    Raises:
        InvalidRequest: The body is not an object or violates the schema
    """
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequest(_describe(e)) from e


class Message(BaseModel):
    role: str
    content: str

    model_config = ConfigDict(extra="allow")


def _messages(messages: List[Message]) -> List[ChatMessage]:
    return [ChatMessage(role=m.role, content=m.content) for m in messages]


# ============================================================================
# OpenAI
# ============================================================================

class ChatCompletionRequest(BaseModel):
    """Body of ``POST /v1/chat/completions``.

    Nulls for the sampling fields mean "use the default".
    """
    model: str = Field(min_length=1)
    messages: List[Message] = Field(min_length=1)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    stream: bool = False
    seed: Optional[int] = None

    model_config = ConfigDict(extra="allow")

    def to_chat_request(self) -> ChatRequest:
        return ChatRequest(
            messages=_messages(self.messages),
            max_tokens=self.max_tokens if self.max_tokens is not None else DEFAULT_MAX_TOKENS,
            temperature=self.temperature if self.temperature is not None else DEFAULT_TEMPERATURE,
            stream=self.stream,
            top_p=self.top_p if self.top_p is not None else DEFAULT_TOP_P,
            seed=self.seed,
        )


# ============================================================================
# Ollama
# ============================================================================

class OllamaOptions(BaseModel):
    num_predict: Optional[int] = Field(default=None, ge=1)
    temperature: Optional[float] = Field(default=None, ge=0)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    seed: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class _OllamaBody(BaseModel):
    model: str = Field(min_length=1)
    stream: Optional[bool] = None
    options: Optional[OllamaOptions] = None

    model_config = ConfigDict(extra="allow")

    def _request(self, messages: List[ChatMessage]) -> ChatRequest:
        options = self.options or OllamaOptions()
        return ChatRequest(
            messages=messages,
            max_tokens=options.num_predict if options.num_predict is not None else DEFAULT_MAX_TOKENS,
            temperature=options.temperature if options.temperature is not None else DEFAULT_TEMPERATURE,
            # Ollama streams unless told otherwise
            stream=True if self.stream is None else self.stream,
            top_p=options.top_p if options.top_p is not None else DEFAULT_TOP_P,
            seed=options.seed,
        )


class OllamaChatRequest(_OllamaBody):
    """Body of ``POST /api/chat``."""
    messages: List[Message] = Field(min_length=1)

    def to_chat_request(self) -> ChatRequest:
        return self._request(_messages(self.messages))


class OllamaGenerateRequest(_OllamaBody):
    """Body of ``POST /api/generate``; the prompt becomes a single user message."""
    prompt: str

    def to_chat_request(self) -> ChatRequest:
        return self._request([ChatMessage(role="user", content=self.prompt)])


class OllamaShowRequest(BaseModel):
    """Body of ``POST /api/show``; older clients send ``name``, newer ones ``model``."""
    name: Optional[str] = None
    model: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @property
    def requested_name(self) -> str:
        name = self.name or self.model
        if not name:
            raise InvalidRequest("'name' is required")
        return name
