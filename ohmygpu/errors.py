"""Exception hierarchy for ohmygpu.

Two families: ``LoadError`` for anything that goes wrong while bringing a
model up (the runtime ends in the ERROR status), and ``GenerationError`` for
per-request failures (the runtime status is left untouched).
"""


class OhMyGPUError(Exception):
    """Base class for all ohmygpu errors."""


# ============================================================================
# Load-time errors
# ============================================================================

class LoadError(OhMyGPUError):
    """A model could not be loaded (bad files, out of memory, over budget)."""


class ConfigError(LoadError):
    """Model directory, weights or model config are missing or unsupported."""


class ModelNotFound(LoadError):
    """The registry has no model with the requested name."""

    def __init__(self, name: str):
        super().__init__(f"Model not found: {name}")
        self.name = name


# ============================================================================
# Generation-time errors
# ============================================================================

class GenerationError(OhMyGPUError):
    """A single generation request failed."""


class NotLoaded(GenerationError):
    """Generation was requested while no model is Ready."""

    def __init__(self, message: str = "Model not loaded"):
        super().__init__(message)


class UnsupportedOperation(GenerationError):
    """The active runtime does not offer the requested capability."""


class TokenizationError(GenerationError):
    """Prompt could not be encoded or generated ids could not be decoded."""


class BackendError(GenerationError):
    """A forward pass or decode failed on the tensor backend."""


class InvalidDimensions(GenerationError):
    """Requested image size or step count cannot be mapped onto the latent grid."""
