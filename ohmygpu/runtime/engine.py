"""Autoregressive text generation engine.

One call = one GenerationSession:

    INIT -> DECODING -> STOPPED_EOS | STOPPED_LENGTH | CANCELLED

The first forward pass feeds the whole prompt and fills the decode cache;
every later pass feeds only the newest token. EOS is never appended to the
output nor counted in ``tokens_generated``.

Usage:
    engine = TextGenerationEngine(model, tokenizer)
    ids = engine.encode_prompt("Hello")
    result = engine.generate(ids, GenerationConfig(max_tokens=64))

    # Streaming: send() returns False once the consumer is gone
    engine.stream(ids, GenerationConfig(max_tokens=64), send)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

import torch

from ohmygpu.errors import BackendError, GenerationError, TokenizationError
from ohmygpu.logger import get_logger
from ohmygpu.runtime.device import is_out_of_memory
from ohmygpu.runtime.sampler import Sampler
from ohmygpu.runtime.tokenizer import Tokenizer
from ohmygpu.types import FINISH_LENGTH, FINISH_STOP, ChatRequest, ChatToken

logger = get_logger(__name__)

# Decoders emit this while a multi-byte character is only partially generated
_INCOMPLETE_CHAR = "\ufffd"


class GenerationState(Enum):
    INIT = "init"
    DECODING = "decoding"
    STOPPED_EOS = "stopped_eos"
    STOPPED_LENGTH = "stopped_length"
    CANCELLED = "cancelled"


@dataclass
class GenerationConfig:
    """Configuration for one generation call.

    Attributes:
        max_tokens: Maximum number of new tokens
        temperature: Sampling temperature
        top_p: Nucleus mass (1.0 to disable)
        seed: Sampler seed (None for the default seed)
    """
    max_tokens: int = 2048
    temperature: float = 0.7
    top_p: float = 0.9
    seed: Optional[int] = None

    @classmethod
    def from_request(cls, request: ChatRequest) -> "GenerationConfig":
        return cls(
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            top_p=request.top_p,
            seed=request.seed,
        )


@dataclass
class GenerationResult:
    text: str
    token_ids: List[int]
    tokens_generated: int
    finish_reason: str


@dataclass
class GenerationSession:
    """Ephemeral per-call decode state."""
    prompt_ids: List[int]
    cache: Any
    generated: List[int] = field(default_factory=list)
    state: GenerationState = GenerationState.INIT
    emitted_text: str = ""
    forward_passes: int = 0

    @property
    def token_ids(self) -> List[int]:
        return self.prompt_ids + self.generated

    @property
    def finish_reason(self) -> Optional[str]:
        if self.state == GenerationState.STOPPED_EOS:
            return FINISH_STOP
        if self.state == GenerationState.STOPPED_LENGTH:
            return FINISH_LENGTH
        return None


class TextGenerationEngine:
    """Drives a causal language model token by token.

    Args:
        model: Object with ``new_cache()`` and ``__call__(input_ids, cache=...)``
            returning logits [batch, seq_len, vocab] (see ``TextModel``)
        tokenizer: Tokenizer capability
    """

    def __init__(self, model: Any, tokenizer: Tokenizer):
        self.model = model
        self.tokenizer = tokenizer

    @property
    def eos_token_id(self) -> Optional[int]:
        return self.tokenizer.eos_token_id

    def encode_prompt(self, prompt: str, add_special_tokens: bool = True) -> List[int]:
        ids = self.tokenizer.encode(prompt, add_special_tokens=add_special_tokens)
        if not ids:
            raise TokenizationError("Prompt encodes to zero tokens")
        return ids

    def start_session(self, prompt_ids: List[int]) -> GenerationSession:
        if not prompt_ids:
            raise TokenizationError("Cannot generate from an empty prompt")
        return GenerationSession(prompt_ids=list(prompt_ids), cache=self.model.new_cache())

    def _forward(self, session: GenerationSession) -> torch.Tensor:
        """Logits for the next position."""
        if session.forward_passes == 0:
            step_ids = session.token_ids
        else:
            step_ids = session.token_ids[-1:]
        input_ids = torch.tensor([step_ids], dtype=torch.long)
        try:
            logits = self.model(input_ids, cache=session.cache)
        except GenerationError:
            raise
        except Exception as e:
            if is_out_of_memory(e):
                raise BackendError(f"Device out of memory during generation: {e}") from e
            raise BackendError(f"Forward pass failed: {e}") from e
        session.forward_passes += 1
        return logits[0, -1]

    def _step(self, session: GenerationSession, sampler: Sampler) -> Optional[int]:
        """Run one DECODING iteration; returns the new token or None on EOS."""
        next_token = sampler.sample(self._forward(session))
        if self.eos_token_id is not None and next_token == self.eos_token_id:
            session.state = GenerationState.STOPPED_EOS
            return None
        session.generated.append(next_token)
        return next_token

    def _decode_generated(self, session: GenerationSession) -> str:
        return self.tokenizer.decode(session.generated, skip_special_tokens=True)

    def generate(self, prompt_ids: List[int], config: Optional[GenerationConfig] = None) -> GenerationResult:
        """Generate to completion.

        Args:
            prompt_ids: Prompt token IDs
            config: Generation configuration (uses defaults if None)

        Returns:
            GenerationResult with only the newly generated text
        """
        config = config or GenerationConfig()
        session = self.start_session(prompt_ids)
        sampler = Sampler(config.temperature, config.top_p, config.seed)

        logger.info(f"Generation: prompt={len(prompt_ids)}, max_tokens={config.max_tokens}, "
                    f"temperature={config.temperature}, top_p={config.top_p}")

        session.state = GenerationState.DECODING
        for _ in range(config.max_tokens):
            if self._step(session, sampler) is None:
                break
        if session.state == GenerationState.DECODING:
            session.state = GenerationState.STOPPED_LENGTH

        text = self._decode_generated(session)
        logger.info(f"Done: {len(session.generated)} tokens, finish_reason={session.finish_reason}")
        return GenerationResult(
            text=text,
            token_ids=session.token_ids,
            tokens_generated=len(session.generated),
            finish_reason=session.finish_reason,
        )

    def stream(
        self,
        prompt_ids: List[int],
        config: Optional[GenerationConfig],
        send: Callable[[ChatToken], bool],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> GenerationSession:
        """Generate, pushing text deltas through ``send``.

        Each delta is the decoded text beyond what was already emitted; text
        ending in an incomplete character is held back until it resolves.
        The last token carries the finish reason and any held-back text.
        If ``send`` returns False or ``should_stop()`` turns true, no further
        forward pass is issued and the session ends CANCELLED.

        Returns:
            The finished session
        """
        config = config or GenerationConfig()
        session = self.start_session(prompt_ids)
        sampler = Sampler(config.temperature, config.top_p, config.seed)

        logger.info(f"Streaming generation: prompt={len(prompt_ids)}, max_tokens={config.max_tokens}")

        session.state = GenerationState.DECODING
        for _ in range(config.max_tokens):
            if should_stop is not None and should_stop():
                session.state = GenerationState.CANCELLED
                break
            if self._step(session, sampler) is None:
                break

            text = self._decode_generated(session)
            if text.endswith(_INCOMPLETE_CHAR) or not text.startswith(session.emitted_text):
                continue
            if len(text) == len(session.emitted_text):
                continue
            delta = text[len(session.emitted_text):]
            if not send(ChatToken(content=delta)):
                session.state = GenerationState.CANCELLED
                break
            session.emitted_text = text

        if session.state == GenerationState.CANCELLED:
            logger.info(f"Stream cancelled after {len(session.generated)} tokens")
            return session

        if session.state == GenerationState.DECODING:
            session.state = GenerationState.STOPPED_LENGTH

        final_text = self._decode_generated(session)
        remainder = final_text[len(session.emitted_text):] if final_text.startswith(session.emitted_text) else ""
        if send(ChatToken(content=remainder, finish_reason=session.finish_reason)):
            session.emitted_text += remainder
        logger.info(f"Done: {len(session.generated)} tokens, finish_reason={session.finish_reason}")
        return session
