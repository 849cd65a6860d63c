"""Configuration for the SnapVLM engine.

Defines tiling parameters, special-token strings, chat template choice and the
language-model dimensions the generation engine needs to thread its KV cache.

Why: Centralized configuration as a dataclass provides type safety, validation,
and a single source of truth. The tiler, the tokenizer and the engine must all
agree on patch size, tokens-per-tile and special tokens; if any of them read
these values from different places the image-marker count drifts away from the
embedding slot count and generation fails with ConfigMismatch. The
__post_init__ validation catches bad values when the artifact is loaded rather
than half-way through a generation.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any

from snapvlm.core.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TilingConfig:
    """Parameters of the dynamic-resize and grid-split preprocessor.

    Attributes:
        max_side_len: Upper bound on the resized long side (pixels)
        patch_size: Side length of one square tile (pixels)
        resize_to_max: Always scale the long side to max_side_len
    """

    max_side_len: int = 2048
    patch_size: int = 512
    resize_to_max: bool = False

    def __post_init__(self) -> None:
        if self.patch_size <= 0:
            raise ValueError(f"patch_size must be positive, got {self.patch_size}")
        if self.max_side_len < self.patch_size:
            raise ValueError(
                f"max_side_len ({self.max_side_len}) must be >= patch_size ({self.patch_size})"
            )
        if self.max_side_len % self.patch_size != 0:
            raise ValueError(
                f"max_side_len ({self.max_side_len}) must be a multiple of patch_size "
                f"({self.patch_size})"
            )


class ChatTemplate(Enum):
    """Supported chat layouts.

    Why: Choosing between template strings by comparing names lets the layouts
    drift apart silently. An enum keeps the choice explicit and lets the
    tokenizer use one assembly routine parameterised by marker tables.
    """

    CHATML = "chatml"
    PLAIN = "plain"


# nanoVLM / SmolVLM config.json keys mapped to field names
_KEY_ALIASES = {
    "mp_image_token_length": "tokens_per_tile",
    "max_img_size": "max_side_len",
    "splitted_image_size": "patch_size",
    "resize_to_max_side_len": "resize_to_max",
    "lm_n_blocks": "num_hidden_layers",
    "lm_hidden_dim": "hidden_size",
    "lm_n_kv_heads": "num_kv_heads",
    "lm_vocab_size": "vocab_size",
}


@dataclass
class SnapVLMConfig:
    """Configuration shared by the tiler, tokenizer and generation engine.

    Attributes:
        max_side_len: Upper bound on the resized image's long side (pixels)
        patch_size: Side length of one square tile (pixels)
        resize_to_max: Always scale the long side to max_side_len, even upwards
        tokens_per_tile: Image-marker tokens (= embedding rows) per tile
        image_token: Placeholder token whose embedding is replaced by image features
        global_image_token: Marker preceding the global view's image tokens
        location_token_format: Format string for per-cell markers (1-based row/col)
        bos_token: Beginning-of-sequence token string
        eos_token: End-of-sequence token string; sampling it completes generation
        unk_token: Substitute for pieces missing from the vocabulary
        pad_token: Padding token string
        template: Chat layout used when assembling prompts
        add_bos: Prepend bos_token to templated prompts
        num_hidden_layers: Decoder layers, i.e. KV cache entries per step
        hidden_size: Decoder hidden dimension
        num_kv_heads: Key/value heads per layer
        vocab_size: Size of the logits vector
        max_new_tokens: Default generation budget
        vision_workers: Threads used to vision-encode tiles (1 = sequential)
        strict_cache: Check cache sequence length against position ids each step
    """

    # Tiling
    max_side_len: int = 2048
    patch_size: int = 512
    resize_to_max: bool = False
    tokens_per_tile: int = 64

    # Special tokens
    image_token: str = "<|image|>"
    global_image_token: str = "<|global_image|>"
    location_token_format: str = "<row_{row}_col_{col}>"
    bos_token: str = "<|im_start|>"
    eos_token: str = "<|im_end|>"
    unk_token: str = "<|endoftext|>"
    pad_token: str = "<|endoftext|>"

    # Templating
    template: ChatTemplate = ChatTemplate.CHATML
    add_bos: bool = False

    # Language model shape
    num_hidden_layers: int = 32
    hidden_size: int = 960
    num_kv_heads: int = 5
    vocab_size: int = 49280

    # Generation
    max_new_tokens: int = 256
    vision_workers: int = 1
    strict_cache: bool = False

    def __post_init__(self) -> None:
        """Validate configuration values.

        Why: A zero patch size or tokens-per-tile would make grid and marker
        arithmetic meaningless; raising ConfigError here keeps the failure at
        load time, before any image is processed.
        """
        if isinstance(self.template, str):
            try:
                self.template = ChatTemplate(self.template.lower())
            except ValueError:
                raise ConfigError(
                    f"Unknown template {self.template!r}; expected one of "
                    f"{[t.value for t in ChatTemplate]}"
                ) from None

        positive = (
            "max_side_len",
            "patch_size",
            "tokens_per_tile",
            "num_hidden_layers",
            "hidden_size",
            "num_kv_heads",
            "vocab_size",
            "max_new_tokens",
            "vision_workers",
        )
        for name in positive:
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")

        if self.patch_size > self.max_side_len:
            raise ConfigError(
                f"patch_size ({self.patch_size}) must not exceed max_side_len "
                f"({self.max_side_len})"
            )
        if self.max_side_len % self.patch_size != 0:
            raise ConfigError(
                f"max_side_len ({self.max_side_len}) must be a multiple of patch_size "
                f"({self.patch_size}) so resized images split into whole tiles"
            )

        try:
            self.location_token_format.format(row=1, col=1)
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigError(
                f"location_token_format {self.location_token_format!r} must use "
                f"{{row}} and {{col}} fields"
            ) from exc

    @property
    def max_grid_side(self) -> int:
        """Largest number of tiles along one side of the grid.

        Why: The tokenizer must have a location marker for every cell the tiler
        can produce. The long side is capped at max_side_len, so neither grid
        dimension can exceed ceil(max_side_len / patch_size).
        """
        return math.ceil(self.max_side_len / self.patch_size)

    @property
    def tiling(self) -> TilingConfig:
        """Tiling parameters as a TilingConfig."""
        return TilingConfig(
            max_side_len=self.max_side_len,
            patch_size=self.patch_size,
            resize_to_max=self.resize_to_max,
        )

    def location_token(self, row: int, col: int) -> str:
        """Location marker for a 0-based grid cell."""
        return self.location_token_format.format(row=row + 1, col=col + 1)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapVLMConfig:
        """Build a config from a mapping, accepting nanoVLM key names.

        Unknown keys are ignored so full model config.json files can be passed
        directly.

        Raises:
            ConfigError: If the mapping is not a dict or holds invalid values
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Config must be a JSON object, got {type(data).__name__}")

        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = _KEY_ALIASES.get(key, key)
            if name in known:
                kwargs[name] = value

        extra_tokens = data.get("vlm_extra_tokens")
        if isinstance(extra_tokens, dict):
            if "image_token" in extra_tokens:
                kwargs["image_token"] = extra_tokens["image_token"]
            if "global_image_token" in extra_tokens:
                kwargs["global_image_token"] = extra_tokens["global_image_token"]

        try:
            return cls(**kwargs)
        except TypeError as exc:
            raise ConfigError(f"Invalid config values: {exc}") from exc

    @classmethod
    def from_json(cls, path: str | Path) -> SnapVLMConfig:
        """Load a config from a JSON file.

        Raises:
            ConfigError: If the file is missing, unreadable or not valid JSON
        """
        path = Path(path)
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file not found: {path}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Failed to parse config {path}: {exc}") from exc

        config = cls.from_dict(data)
        logger.info(
            "Loaded config from %s: patch_size=%d max_side_len=%d tokens_per_tile=%d layers=%d",
            path,
            config.patch_size,
            config.max_side_len,
            config.tokens_per_tile,
            config.num_hidden_layers,
        )
        return config


__all__ = ["ChatTemplate", "SnapVLMConfig", "TilingConfig"]
