"""Text runtime: chat and completions on a causal language model."""

from typing import Optional

import torch

from ohmygpu.errors import ConfigError, LoadError
from ohmygpu.logger import get_logger
from ohmygpu.model.loader import get_safetensor_files, read_json_config
from ohmygpu.model.text import TextModel
from ohmygpu.runtime.base import Runtime
from ohmygpu.runtime.device import (
    check_vram_budget,
    configure_cpu_threads,
    default_dtype,
    is_out_of_memory,
    release_memory,
    select_device,
)
from ohmygpu.runtime.engine import GenerationConfig, TextGenerationEngine
from ohmygpu.runtime.stream import DEFAULT_CAPACITY, TokenStream
from ohmygpu.runtime.tokenizer import Tokenizer
from ohmygpu.types import ChatRequest, ChatResponse, RuntimeCapabilities, RuntimeConfig

logger = get_logger(__name__)


class TextRuntime(Runtime):
    """Runtime for Llama-style and Phi decoders.

    Args:
        use_gpu: Allow CUDA/MPS devices
        stream_capacity: Undelivered-token bound for ``chat_stream``
    """

    name = "text"
    capabilities = RuntimeCapabilities(chat=True, completions=True, streaming=True)

    def __init__(self, use_gpu: bool = True, stream_capacity: int = DEFAULT_CAPACITY):
        super().__init__()
        self.use_gpu = use_gpu
        self.stream_capacity = stream_capacity
        self.engine: Optional[TextGenerationEngine] = None
        self.device: Optional[torch.device] = None

    def _load(self, config: RuntimeConfig) -> None:
        model_path = config.model_path
        if not model_path.is_dir():
            raise ConfigError(f"Model directory not found: {model_path}")

        hf_config = read_json_config(model_path / "config.json")
        if not (model_path / "tokenizer.json").is_file():
            raise ConfigError(f"tokenizer.json not found in {model_path}")
        files = get_safetensor_files(model_path)
        if not files:
            raise ConfigError(f"Could not find model weights (safetensors) in {model_path}")

        device = select_device(config.gpu_id, self.use_gpu)
        dtype = default_dtype(device)
        configure_cpu_threads(config.cpu_threads)
        check_vram_budget(files, config.vram_budget_mb, dtype)
        logger.info(f"Using device {device}, dtype {dtype}")

        self.device = device
        try:
            model = TextModel.from_pretrained(model_path, device=device, dtype=dtype, hf_config=hf_config)
        except Exception as e:
            if is_out_of_memory(e):
                raise LoadError(f"Out of memory while loading {model_path} on {device}") from e
            raise
        tokenizer = Tokenizer.from_pretrained(model_path)
        self.engine = TextGenerationEngine(model, tokenizer)

    def _unload(self) -> None:
        self.engine = None
        release_memory(self.device)
        self.device = None

    def _prompt_ids(self, request: ChatRequest):
        tokenizer = self.engine.tokenizer
        prompt = tokenizer.apply_chat_template(request.messages)
        # Chat templates already emit BOS
        return self.engine.encode_prompt(prompt, add_special_tokens=not tokenizer.has_chat_template)

    def chat(self, request: ChatRequest) -> ChatResponse:
        self._require("chat")
        result = self.engine.generate(self._prompt_ids(request), GenerationConfig.from_request(request))
        return ChatResponse(
            content=result.text,
            tokens_used=result.tokens_generated,
            finish_reason=result.finish_reason,
        )

    def chat_stream(self, request: ChatRequest) -> TokenStream:
        self._require("streaming")
        engine = self.engine
        prompt_ids = self._prompt_ids(request)
        config = GenerationConfig.from_request(request)
        stream = TokenStream(self.stream_capacity)
        return stream.start(lambda send, should_stop: engine.stream(prompt_ids, config, send, should_stop))
