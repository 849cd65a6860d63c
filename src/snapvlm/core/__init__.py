"""Core configuration and error types."""

from snapvlm.core.config import ChatTemplate, SnapVLMConfig, TilingConfig
from snapvlm.core.errors import (
    ConfigError,
    ConfigMismatch,
    EngineBusyError,
    ErrorKind,
    InvalidRegion,
    ModelCallFailure,
    SnapVLMError,
)

__all__ = [
    "ChatTemplate",
    "ConfigError",
    "ConfigMismatch",
    "EngineBusyError",
    "ErrorKind",
    "InvalidRegion",
    "ModelCallFailure",
    "SnapVLMConfig",
    "SnapVLMError",
    "TilingConfig",
]
