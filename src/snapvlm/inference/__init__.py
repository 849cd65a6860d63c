"""Generation engine, model runner interface and end-to-end pipeline.

Why this module exists:
On-device VLM checkpoints are exported as five separately invoked graphs
(vision encoder, token embedding, prefill, decode step, LM head). Turning
them into text needs a loop that:

1. Merges text and tile embeddings at image-marker positions
2. Runs one prefill over the whole prompt
3. Threads the runner-returned KV cache through one decode call per token
4. Stops on eos, the token budget, or a cooperative cancellation signal

Components:
- ModelRunner / ModuleRunner: the backend interface and a torch adapter
- KVCacheEntry: per-layer cache tensors with contract checks
- GenerationEngine: the greedy prefill/decode state machine
- VisionLanguagePipeline: tiler + tokenizer + engine, errors returned as values
"""

from snapvlm.inference.generation import (
    CancellationToken,
    GenerationConfig,
    GenerationEngine,
    GenerationOutput,
    GenerationPhase,
    GenerationState,
    GenerationStatus,
    ProgressEvent,
    ProgressStage,
    greedy_select,
)
from snapvlm.inference.kv_cache import KVCache, KVCacheEntry, validate_cache
from snapvlm.inference.pipeline import (
    ErrorInfo,
    GenerationResult,
    PreparedInputs,
    StreamEvent,
    VisionLanguagePipeline,
)
from snapvlm.inference.runner import ModelRunner, ModuleRunner

__all__ = [
    # Runner
    "ModelRunner",
    "ModuleRunner",
    "KVCache",
    "KVCacheEntry",
    "validate_cache",
    # Engine
    "CancellationToken",
    "GenerationConfig",
    "GenerationEngine",
    "GenerationOutput",
    "GenerationPhase",
    "GenerationState",
    "GenerationStatus",
    "ProgressEvent",
    "ProgressStage",
    "greedy_select",
    # Pipeline
    "ErrorInfo",
    "GenerationResult",
    "PreparedInputs",
    "StreamEvent",
    "VisionLanguagePipeline",
]
