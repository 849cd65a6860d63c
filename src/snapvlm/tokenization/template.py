"""Chat templating with image-marker blocks aligned to the tile grid.

Why: The engine overwrites the embedding at every image-marker position with a
tile embedding, consuming tiles in the order the tiler produced them. That only
works if the prompt contains exactly ``len(tiles) * tokens_per_tile`` image
markers laid out in the same order (global view first, then row-major patches).
Building the marker block from the same TileGrid the tiler returned, in one
function, keeps both sides in lockstep.

Layout produced by ``Tokenizer.apply_template``::

    [bos] <user open> [image block] <prompt tokens> <user close> <assistant open>

Image block for a grid larger than 1x1::

    <global> <image>*T  <row_1_col_1> <image>*T  <row_1_col_2> <image>*T ...

and for a 1x1 grid simply ``<image>*T``.

The chat layout is chosen by the ChatTemplate enum; each layout is only a
table of marker segments fed through the same assembly code.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from snapvlm.core.config import ChatTemplate, SnapVLMConfig
from snapvlm.core.errors import ConfigError
from snapvlm.tokenization.bpe import BPETokenizer, StreamingDecoder
from snapvlm.tokenization.vocabulary import Vocabulary
from snapvlm.vision.tiling import TileGrid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateMarkers:
    """Role-marker segments for one chat layout.

    Each segment is either an exact vocabulary token or a literal that is
    BPE-encoded without text cleaning (so "\\n" survives as a newline token).
    """

    user_open: tuple[str, ...]
    user_close: tuple[str, ...]
    assistant_open: tuple[str, ...]


TEMPLATE_MARKERS: dict[ChatTemplate, TemplateMarkers] = {
    ChatTemplate.CHATML: TemplateMarkers(
        user_open=("<|im_start|>", "user", "\n"),
        user_close=("<|im_end|>", "\n"),
        assistant_open=("<|im_start|>", "assistant", "\n"),
    ),
    ChatTemplate.PLAIN: TemplateMarkers(
        user_open=("<|user|>", "\n"),
        user_close=("\n",),
        assistant_open=("<|assistant|>", "\n"),
    ),
}


@dataclass(frozen=True)
class SpecialTokens:
    """Resolved ids of every special and image-marker token.

    Attributes:
        bos: Beginning-of-sequence id
        eos: End-of-sequence id
        unk: Unknown-piece id
        pad: Padding id
        image: Image-marker id (one per tile embedding row)
        global_image: Marker preceding the global view's image tokens
        locations: (row, col) -> id, 0-based cell coordinates
    """

    bos: int
    eos: int
    unk: int
    pad: int
    image: int
    global_image: int
    locations: dict[tuple[int, int], int] = field(default_factory=dict)

    def skip_ids(self) -> frozenset[int]:
        """Ids that decode to nothing."""
        return frozenset(
            {self.bos, self.eos, self.unk, self.pad, self.image, self.global_image}
            | set(self.locations.values())
        )


def _require(vocab: Vocabulary, token: str, role: str) -> int:
    idx = vocab.get_id(token)
    if idx is None:
        raise ConfigError(f"{role} token {token!r} is not in the vocabulary")
    return idx


def resolve_special_tokens(vocab: Vocabulary, config: SnapVLMConfig) -> SpecialTokens:
    """Look up every special token the config names.

    Location markers are resolved for every cell of the largest grid the
    tiling config can produce.

    Raises:
        ConfigError: If any required token is missing
    """
    side = config.max_grid_side
    locations = {}
    for row in range(side):
        for col in range(side):
            token = config.location_token(row, col)
            locations[(row, col)] = _require(vocab, token, "Location marker")

    return SpecialTokens(
        bos=_require(vocab, config.bos_token, "BOS"),
        eos=_require(vocab, config.eos_token, "EOS"),
        unk=_require(vocab, config.unk_token, "UNK"),
        pad=_require(vocab, config.pad_token, "PAD"),
        image=_require(vocab, config.image_token, "Image"),
        global_image=_require(vocab, config.global_image_token, "Global image"),
        locations=locations,
    )


def marker_tokens(config: SnapVLMConfig) -> list[str]:
    """Image, global-image and location-marker strings the config requires."""
    side = config.max_grid_side
    tokens = [config.image_token, config.global_image_token]
    tokens.extend(config.location_token(r, c) for r in range(side) for c in range(side))
    return tokens


class Tokenizer:
    """Text encoding, decoding and chat templating for one vocabulary.

    Attributes:
        vocab: Loaded vocabulary
        config: Shared engine configuration
        special: Resolved special-token ids
        bpe: Underlying byte-level BPE codec

    Why: All role markers are resolved to ids in the constructor. A template
    whose markers the vocabulary cannot express fails here with ConfigError,
    at load time, instead of silently emitting unk ids into every prompt.

    Example:
        >>> tok = Tokenizer.from_file("tokenizer.json", SnapVLMConfig())
        >>> ids = tok.apply_template("Describe this image.", grid)
        >>> len(tok.image_token_positions(ids)) == grid.num_tiles * 64
        True
    """

    def __init__(self, vocab: Vocabulary, config: SnapVLMConfig) -> None:
        self.vocab = vocab
        self.config = config
        self.special = resolve_special_tokens(vocab, config)
        self.bpe = BPETokenizer(vocab, unk_id=self.special.unk, skip_ids=self.special.skip_ids())

        markers = TEMPLATE_MARKERS[config.template]
        self._user_open = self._resolve_segments(markers.user_open)
        self._user_close = self._resolve_segments(markers.user_close)
        self._assistant_open = self._resolve_segments(markers.assistant_open)
        logger.debug(
            "Template %s resolved: open=%s close=%s assistant=%s",
            config.template.value,
            self._user_open,
            self._user_close,
            self._assistant_open,
        )

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        config: SnapVLMConfig,
        register_markers: bool = False,
    ) -> Tokenizer:
        """Load tokenizer.json and build a Tokenizer.

        Args:
            path: tokenizer.json location
            config: Engine configuration naming the special tokens
            register_markers: Append missing image/location markers as added
                tokens instead of failing

        Raises:
            ConfigError: If the file or any required token is missing
        """
        vocab = Vocabulary.from_file(path)
        if register_markers:
            vocab = vocab.with_added_tokens(marker_tokens(config))
        return cls(vocab, config)

    def _resolve_segments(self, segments: Sequence[str]) -> tuple[int, ...]:
        ids: list[int] = []
        for segment in segments:
            exact = self.vocab.get_id(segment)
            if exact is not None:
                ids.append(exact)
                continue
            encoded = self.bpe.encode_word(segment)
            if self.special.unk in encoded:
                raise ConfigError(
                    f"Template marker {segment!r} for {self.config.template.value} "
                    f"cannot be represented by the vocabulary"
                )
            ids.extend(encoded)
        return tuple(ids)

    @property
    def eos_id(self) -> int:
        return self.special.eos

    @property
    def image_id(self) -> int:
        return self.special.image

    @property
    def prefix_ids(self) -> tuple[int, ...]:
        """Ids before the image block: optional bos plus the user-open marker."""
        bos = (self.special.bos,) if self.config.add_bos else ()
        return bos + self._user_open

    @property
    def suffix_ids(self) -> tuple[int, ...]:
        """Ids after the prompt text: user-close plus assistant-open markers."""
        return self._user_close + self._assistant_open

    def encode(self, text: str) -> list[int]:
        """BPE-encode plain text (no template)."""
        return self.bpe.encode(text)

    def decode(self, ids: Iterable[int]) -> str:
        """Decode ids to text, dropping special and image-marker tokens."""
        return self.bpe.decode(ids)

    def stream_decoder(self) -> StreamingDecoder:
        """Fresh incremental decoder for one generation."""
        return StreamingDecoder(self.bpe)

    def image_block(self, grid: TileGrid) -> list[int]:
        """Image-marker ids for a tile grid, in tile consumption order."""
        per_tile = [self.special.image] * self.config.tokens_per_tile
        if grid.is_single:
            return list(per_tile)

        if grid.grid_h > self.config.max_grid_side or grid.grid_w > self.config.max_grid_side:
            raise ConfigError(
                f"{grid.grid_h}x{grid.grid_w} grid exceeds the largest grid "
                f"({self.config.max_grid_side}x{self.config.max_grid_side}) with location markers"
            )

        ids = [self.special.global_image, *per_tile]
        for row in range(grid.grid_h):
            for col in range(grid.grid_w):
                ids.append(self.special.locations[(row, col)])
                ids.extend(per_tile)
        return ids

    def apply_template(self, text: str, grid: TileGrid | None = None) -> list[int]:
        """Wrap a prompt in role markers, inserting the image block if given.

        Args:
            text: User prompt
            grid: Tile grid of the accompanying image, or None for text only

        Returns:
            Token ids with exactly ``grid.num_tiles * tokens_per_tile`` image ids
        """
        ids = list(self.prefix_ids)
        if grid is not None:
            ids.extend(self.image_block(grid))
        ids.extend(self.encode(text))
        ids.extend(self.suffix_ids)
        return ids

    def image_token_positions(self, ids: Sequence[int]) -> list[int]:
        """Indices of image-marker ids, in order."""
        image_id = self.special.image
        return [i for i, tok in enumerate(ids) if tok == image_id]


__all__ = [
    "TEMPLATE_MARKERS",
    "SpecialTokens",
    "TemplateMarkers",
    "Tokenizer",
    "marker_tokens",
    "resolve_special_tokens",
]
