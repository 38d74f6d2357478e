"""Tokenizer capability used by the generation engine and the image pipeline.

Wraps a Hugging Face fast tokenizer and adds the bits generation needs:
EOS lookup, decode of generated ids, and chat prompt construction with a
Llama-2 style fallback for tokenizers that ship no chat template.
"""

from pathlib import Path
from typing import List, Optional, Sequence, Union

from transformers import AutoTokenizer, PreTrainedTokenizerBase, PreTrainedTokenizerFast

from ohmygpu.errors import ConfigError, TokenizationError
from ohmygpu.logger import get_logger
from ohmygpu.types import ChatMessage

logger = get_logger(__name__)

EOS_CANDIDATES = ("</s>", "<|endoftext|>", "<eos>", "<|end|>")


def build_llama_prompt(messages: Sequence[ChatMessage]) -> str:
    """Llama-2 chat layout.

    system -> ``<<SYS>>\\n{c}\\n<</SYS>>\\n\\n``, user -> ``[INST] {c} [/INST]``,
    assistant -> `` {c} ``, any other role -> raw content.
    """
    parts = []
    for msg in messages:
        if msg.role == "system":
            parts.append(f"<<SYS>>\n{msg.content}\n<</SYS>>\n\n")
        elif msg.role == "user":
            parts.append(f"[INST] {msg.content} [/INST]")
        elif msg.role == "assistant":
            parts.append(f" {msg.content} ")
        else:
            parts.append(msg.content)
    return "".join(parts)


class Tokenizer:
    """Tokenizer wrapper.

    Args:
        tokenizer: A transformers tokenizer
        eos_token_id: Override the detected end-of-sequence id
    """

    def __init__(self, tokenizer: PreTrainedTokenizerBase, eos_token_id: Optional[int] = None):
        self.tokenizer = tokenizer
        self.eos_token_id = eos_token_id if eos_token_id is not None else self._find_eos()
        logger.debug(f"EOS token id: {self.eos_token_id}")

    @classmethod
    def from_file(cls, tokenizer_file: Union[str, Path]) -> "Tokenizer":
        """Load a standalone ``tokenizer.json``."""
        tokenizer_file = Path(tokenizer_file)
        if not tokenizer_file.is_file():
            raise ConfigError(f"Tokenizer not found at {tokenizer_file}")
        try:
            hf_tokenizer = PreTrainedTokenizerFast(tokenizer_file=str(tokenizer_file))
        except Exception as e:
            raise ConfigError(f"Failed to load tokenizer {tokenizer_file}: {e}") from e
        return cls(hf_tokenizer)

    @classmethod
    def from_pretrained(cls, model_path: Union[str, Path]) -> "Tokenizer":
        """Load the tokenizer of a model directory.

        Uses ``AutoTokenizer`` (which picks up ``tokenizer_config.json`` and
        its chat template) and falls back to the bare ``tokenizer.json``.
        """
        model_path = Path(model_path)
        if (model_path / "tokenizer_config.json").is_file():
            try:
                return cls(AutoTokenizer.from_pretrained(str(model_path)))
            except (OSError, ValueError) as e:
                logger.warning(f"AutoTokenizer failed for {model_path} ({e}), using tokenizer.json")
        return cls.from_file(model_path / "tokenizer.json")

    def _find_eos(self) -> Optional[int]:
        declared = getattr(self.tokenizer, "eos_token_id", None)
        if declared is not None:
            return declared
        vocab = self.tokenizer.get_vocab()
        for token in EOS_CANDIDATES:
            if token in vocab:
                return vocab[token]
        logger.warning("No EOS token found, generation will only stop at max_tokens")
        return None

    @property
    def has_chat_template(self) -> bool:
        return bool(getattr(self.tokenizer, "chat_template", None))

    def encode(self, text: str, add_special_tokens: bool = True) -> List[int]:
        try:
            return list(self.tokenizer.encode(text, add_special_tokens=add_special_tokens))
        except Exception as e:
            raise TokenizationError(f"Tokenization error: {e}") from e

    def decode(self, token_ids: Sequence[int], skip_special_tokens: bool = True) -> str:
        try:
            # Decoding must stay prefix-stable for streamed deltas
            return self.tokenizer.decode(
                list(token_ids),
                skip_special_tokens=skip_special_tokens,
                clean_up_tokenization_spaces=False,
            )
        except Exception as e:
            raise TokenizationError(f"Decode error: {e}") from e

    def apply_chat_template(self, messages: Sequence[ChatMessage]) -> str:
        """Render a conversation into the prompt string fed to the model."""
        if not self.has_chat_template:
            return build_llama_prompt(messages)
        try:
            return self.tokenizer.apply_chat_template(
                [m.to_dict() for m in messages],
                tokenize=False,
                add_generation_prompt=True,
            )
        except Exception as e:
            raise TokenizationError(f"Chat template failed: {e}") from e

    def __len__(self) -> int:
        return len(self.tokenizer)
