"""Byte-level BPE tokenization and chat templating.

Why: Prompt assembly must emit exactly one image-marker token per tile
embedding row, laid out in tile order, or the engine cannot merge image
features into the sequence. Vocabulary loading, BPE and templating live
together so that invariant is owned by one package.
"""

from snapvlm.tokenization.bpe import (
    BPETokenizer,
    StreamingDecoder,
    bytes_to_unicode,
    clean_text,
)
from snapvlm.tokenization.template import (
    TEMPLATE_MARKERS,
    SpecialTokens,
    TemplateMarkers,
    Tokenizer,
    marker_tokens,
    resolve_special_tokens,
)
from snapvlm.tokenization.vocabulary import Vocabulary

__all__ = [
    "BPETokenizer",
    "SpecialTokens",
    "StreamingDecoder",
    "TEMPLATE_MARKERS",
    "TemplateMarkers",
    "Tokenizer",
    "Vocabulary",
    "bytes_to_unicode",
    "clean_text",
    "marker_tokens",
    "resolve_special_tokens",
]
