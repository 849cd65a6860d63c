"""
SnapVLM: On-device vision-language inference engine.

Turns an image plus a text prompt into generated text with a multimodal
transformer split into separately invocable sub-networks: dynamic-resize
image tiling, byte-level BPE with image-marker chat templating, and a greedy
prefill/decode loop threading a per-layer KV cache.
"""

__version__ = "0.1.0"
__license__ = "MIT"

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
from snapvlm.inference.generation import (
    CancellationToken,
    GenerationConfig,
    GenerationEngine,
    GenerationStatus,
)
from snapvlm.inference.pipeline import GenerationResult, StreamEvent, VisionLanguagePipeline
from snapvlm.inference.runner import ModelRunner, ModuleRunner
from snapvlm.tokenization.template import Tokenizer
from snapvlm.vision.image import Image, PixelLayout
from snapvlm.vision.tiling import ImageTiler, TileGrid, tile

__all__ = [
    "CancellationToken",
    "ChatTemplate",
    "ConfigError",
    "ConfigMismatch",
    "EngineBusyError",
    "ErrorKind",
    "GenerationConfig",
    "GenerationEngine",
    "GenerationResult",
    "GenerationStatus",
    "Image",
    "ImageTiler",
    "InvalidRegion",
    "ModelCallFailure",
    "ModelRunner",
    "ModuleRunner",
    "PixelLayout",
    "SnapVLMConfig",
    "SnapVLMError",
    "StreamEvent",
    "TileGrid",
    "TilingConfig",
    "Tokenizer",
    "VisionLanguagePipeline",
    "tile",
    "__version__",
]
