"""Pytest configuration and shared fixtures.

Why: Tokenizer, tiling and engine tests all need the same small world: a
byte-level vocabulary with a handful of merges and every special token, a
config with tiny tiles so grids stay cheap, and a scripted ModelRunner whose
outputs are fully deterministic. Building them once here keeps each test
module focused on its own behavior.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import torch

from snapvlm.core.config import SnapVLMConfig
from snapvlm.inference.kv_cache import KVCacheEntry
from snapvlm.inference.runner import ModelRunner
from snapvlm.tokenization.bpe import bytes_to_unicode
from snapvlm.tokenization.template import Tokenizer
from snapvlm.tokenization.vocabulary import Vocabulary

# Merges over byte-level symbols; "Ġ" is the space byte
MERGES = [
    "h e",
    "l l",
    "he ll",
    "hell o",
    "Ġ w",
    "o r",
    "Ġw or",
    "l d",
    "Ġwor ld",
    "Ġ t",
    "Ġt h",
]

SPECIAL_TOKENS = ["<|endoftext|>", "<|im_start|>", "<|im_end|>", "<|image|>", "<|global_image|>"]

TEST_CONFIG = {
    "max_side_len": 16,
    "patch_size": 8,
    "tokens_per_tile": 2,
    "num_hidden_layers": 2,
    "hidden_size": 8,
    "num_kv_heads": 1,
    "max_new_tokens": 8,
}


def build_tokenizer_json(max_grid_side: int = 2) -> dict[str, Any]:
    """HF-style tokenizer.json content for the test vocabulary.

    Ids 0-255 are the single byte symbols, then merged pieces, then special
    and location-marker tokens as added_tokens.
    """
    vocab: dict[str, int] = {}
    for char in bytes_to_unicode().values():
        vocab[char] = len(vocab)
    for merge in MERGES:
        left, right = merge.split(" ")
        vocab.setdefault(left + right, len(vocab))

    specials = list(SPECIAL_TOKENS)
    specials += [
        f"<row_{r}_col_{c}>"
        for r in range(1, max_grid_side + 1)
        for c in range(1, max_grid_side + 1)
    ]
    added = []
    for token in specials:
        idx = len(vocab)
        vocab[token] = idx
        added.append({"id": idx, "content": token, "special": True})

    return {
        "version": "1.0",
        "added_tokens": added,
        "model": {"type": "BPE", "vocab": vocab, "merges": MERGES},
    }


@pytest.fixture
def tokenizer_data() -> dict[str, Any]:
    return build_tokenizer_json()


@pytest.fixture
def vocab(tokenizer_data: dict[str, Any]) -> Vocabulary:
    return Vocabulary.from_dict(tokenizer_data)


@pytest.fixture
def config(vocab: Vocabulary) -> SnapVLMConfig:
    """Tiny-tile config: 8px patches, 16px cap, 2 tokens per tile, 2 layers."""
    return SnapVLMConfig(vocab_size=vocab.max_id + 1, **TEST_CONFIG)


@pytest.fixture
def tokenizer(vocab: Vocabulary, config: SnapVLMConfig) -> Tokenizer:
    return Tokenizer(vocab, config)


@pytest.fixture
def model_dir(tmp_path: Path, tokenizer_data: dict[str, Any], vocab: Vocabulary) -> Path:
    """Directory holding config.json (nanoVLM key names) and tokenizer.json."""
    config = {
        "max_img_size": TEST_CONFIG["max_side_len"],
        "splitted_image_size": TEST_CONFIG["patch_size"],
        "mp_image_token_length": TEST_CONFIG["tokens_per_tile"],
        "lm_n_blocks": TEST_CONFIG["num_hidden_layers"],
        "lm_hidden_dim": TEST_CONFIG["hidden_size"],
        "lm_n_kv_heads": TEST_CONFIG["num_kv_heads"],
        "lm_vocab_size": vocab.max_id + 1,
        "max_new_tokens": TEST_CONFIG["max_new_tokens"],
        "vlm_extra_tokens": {"image_token": "<|image|>", "global_image_token": "<|global_image|>"},
    }
    (tmp_path / "config.json").write_text(json.dumps(config), encoding="utf-8")
    (tmp_path / "tokenizer.json").write_text(json.dumps(tokenizer_data), encoding="utf-8")
    return tmp_path


class StubRunner(ModelRunner):
    """Deterministic ModelRunner double.

    lm_head returns one-hot logits following ``script`` (the last entry
    repeats). Token embeddings are the token id broadcast over the hidden
    dimension; tile embeddings are the tile's mean pixel value. Every call is
    recorded in ``calls``. ``mangle`` maps a stage name to a function applied
    to that stage's return value, to simulate backends with malformed outputs.
    """

    def __init__(
        self,
        script: list[int],
        vocab_size: int,
        hidden_size: int = 8,
        num_layers: int = 2,
        tokens_per_tile: int = 2,
        head_dim: int = 4,
        fail_stage: str | None = None,
        fail_call: int = 0,
        cache_layers: int | None = None,
        cache_growth: int = 1,
        mangle: dict[str, Callable[[Any], Any]] | None = None,
        layer_query_failures: int = 0,
    ) -> None:
        self.script = list(script)
        self.vocab_size = vocab_size
        self.hidden_size = hidden_size
        self.num_layers = num_layers
        self.tokens_per_tile = tokens_per_tile
        self.head_dim = head_dim
        self.fail_stage = fail_stage
        self.fail_call = fail_call
        self.cache_layers = cache_layers
        self.cache_growth = cache_growth
        self.mangle = mangle or {}
        self.layer_query_failures = layer_query_failures
        self.calls: list[str] = []
        self.prefill_args: tuple[torch.Tensor, ...] | None = None
        self.decode_args: list[tuple[int, int, int]] = []

    @property
    def num_hidden_layers(self) -> int:
        if self.layer_query_failures > 0:
            self.layer_query_failures -= 1
            raise RuntimeError("layer count unavailable")
        return self.num_layers

    def _out(self, stage: str, value: Any) -> Any:
        hook = self.mangle.get(stage)
        return hook(value) if hook is not None else value

    def _record(self, stage: str) -> None:
        count = self.calls.count(stage)
        self.calls.append(stage)
        if stage == self.fail_stage and count == self.fail_call:
            raise RuntimeError(f"{stage} exploded")

    def _cache(self, length: int) -> tuple[KVCacheEntry, ...]:
        layers = self.cache_layers if self.cache_layers is not None else self.num_layers
        shape = (1, 1, length, self.head_dim)
        return tuple(KVCacheEntry(torch.zeros(shape), torch.zeros(shape)) for _ in range(layers))

    def vision_encode(self, pixel_values: torch.Tensor) -> torch.Tensor:
        self._record("vision_encode")
        rows = torch.full((self.tokens_per_tile, self.hidden_size), float(pixel_values.mean()))
        return self._out("vision_encode", rows)

    def token_embed(self, input_ids: torch.Tensor) -> torch.Tensor:
        self._record("token_embed")
        ids = input_ids.to(torch.float32).unsqueeze(-1)
        return self._out("token_embed", ids.expand(-1, -1, self.hidden_size).clone())

    def prefill(self, inputs_embeds, attention_mask, position_ids):
        self._record("prefill")
        self.prefill_args = (inputs_embeds, attention_mask, position_ids)
        return self._out("prefill", (inputs_embeds, self._cache(inputs_embeds.shape[1])))

    def decode_step(self, inputs_embeds, attention_mask, position_ids, kv_cache):
        self._record("decode_step")
        self.decode_args.append(
            (int(attention_mask.shape[1]), int(position_ids.item()), kv_cache[0].seq_len)
        )
        return self._out(
            "decode_step", (inputs_embeds, self._cache(kv_cache[0].seq_len + self.cache_growth))
        )

    def lm_head(self, hidden: torch.Tensor) -> torch.Tensor:
        self._record("lm_head")
        step = self.calls.count("lm_head") - 1
        token = self.script[min(step, len(self.script) - 1)]
        logits = torch.zeros(1, 1, self.vocab_size)
        logits[..., token] = 1.0
        return self._out("lm_head", logits)


@pytest.fixture
def make_runner(config: SnapVLMConfig):
    """Factory for StubRunner instances matching the test config."""

    def factory(script: list[int], **kwargs: Any) -> StubRunner:
        kwargs.setdefault("vocab_size", config.vocab_size)
        kwargs.setdefault("hidden_size", config.hidden_size)
        kwargs.setdefault("num_layers", config.num_hidden_layers)
        kwargs.setdefault("tokens_per_tile", config.tokens_per_tile)
        return StubRunner(script, **kwargs)

    return factory
