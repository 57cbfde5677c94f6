"""Terminal chat over a local GGUF model."""

from .report import ChatError, ConfigError, ContextOverflowError
from .session import Session

__all__ = ["ChatError", "ConfigError", "ContextOverflowError", "Session"]
