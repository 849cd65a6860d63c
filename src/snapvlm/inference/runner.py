"""Model runner interface: the engine's only view of the inference backend.

Why: The vision encoder, token embedding, prefill, decode step and LM head
are separate sub-networks exported from one checkpoint (ONNX sessions on
device, plain nn.Modules on a workstation). The engine needs exactly five
blocking calls and a layer count from them. Declaring those as an abstract
base class lets the engine run unchanged against a real backend or a
deterministic test double.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Any

import torch
from torch import Tensor

from snapvlm.core.errors import ModelCallFailure
from snapvlm.inference.kv_cache import KVCache, as_cache


class ModelRunner(ABC):
    """Abstract inference backend.

    Subclasses own their sessions/weights; the engine never touches them
    except through these calls. Any exception raised by a call aborts the
    current generation with ModelCallFailure.
    """

    @property
    @abstractmethod
    def num_hidden_layers(self) -> int:
        """Decoder layers, i.e. entries in every KV cache."""
        ...

    @abstractmethod
    def vision_encode(self, pixel_values: Tensor) -> Tensor:
        """Encode one tile.

        Args:
            pixel_values: float32 tensor (3, P, P) in [0, 1]

        Returns:
            Tile embeddings of shape (tokens_per_tile, hidden_size)
        """
        ...

    @abstractmethod
    def token_embed(self, input_ids: Tensor) -> Tensor:
        """Embed token ids.

        Args:
            input_ids: int64 tensor (1, L)

        Returns:
            Embeddings of shape (1, L, hidden_size)
        """
        ...

    @abstractmethod
    def prefill(
        self,
        inputs_embeds: Tensor,
        attention_mask: Tensor,
        position_ids: Tensor,
    ) -> tuple[Tensor, KVCache]:
        """Process the whole prompt at once.

        Args:
            inputs_embeds: (1, L, hidden_size)
            attention_mask: (1, L) int64 ones
            position_ids: (1, L) int64, 0..L-1

        Returns:
            (hidden states (1, L, hidden_size), cache with one entry per layer)
        """
        ...

    @abstractmethod
    def decode_step(
        self,
        inputs_embeds: Tensor,
        attention_mask: Tensor,
        position_ids: Tensor,
        kv_cache: KVCache,
    ) -> tuple[Tensor, KVCache]:
        """Process one new token against the cache.

        Args:
            inputs_embeds: (1, 1, hidden_size)
            attention_mask: (1, seq_len + 1) int64 ones
            position_ids: (1, 1) int64 holding seq_len
            kv_cache: Cache returned by the previous call

        Returns:
            (hidden state (1, 1, hidden_size), replacement cache)
        """
        ...

    @abstractmethod
    def lm_head(self, hidden: Tensor) -> Tensor:
        """Project a hidden state to vocabulary logits (last dim = vocab)."""
        ...


def _to_cache(outputs: Sequence[Any], num_layers: int, stage: str) -> tuple[Tensor, KVCache]:
    """Split (hidden, *kv) module outputs into hidden state and KVCache.

    Accepted layouts after the hidden state:
      - one sequence of per-layer (key, value) pairs or KVCacheEntry objects
      - 2 * num_layers flat tensors: key_0, value_0, key_1, value_1, ...
    """
    if isinstance(outputs, Tensor) or len(outputs) < 2:
        raise ModelCallFailure(stage, "module must return (hidden, cache...)")

    hidden, rest = outputs[0], list(outputs[1:])
    if len(rest) == 1 and isinstance(rest[0], (list, tuple)):
        return hidden, as_cache(rest[0])

    if len(rest) != 2 * num_layers:
        raise ModelCallFailure(
            stage, f"returned {len(rest)} cache tensors, expected {2 * num_layers}"
        )
    pairs = [(rest[i], rest[i + 1]) for i in range(0, len(rest), 2)]
    return hidden, as_cache(pairs)


class ModuleRunner(ModelRunner):
    """ModelRunner over torch modules or plain callables.

    Attributes:
        vision_encoder: (1, 3, P, P) -> (1, T, D) or (T, D)
        embed_tokens: (1, L) -> (1, L, D)
        prefill_module: (embeds, mask, positions) -> (hidden, *kv)
        decode_module: (embeds, mask, positions, k0, v0, k1, v1, ...) -> (hidden, *kv)
        head: hidden -> logits

    Why: Exported SmolVLM graphs take the past key/values as flat positional
    inputs and return the present ones the same way. Flattening on the way in
    and pairing on the way out keeps the engine working purely in
    KVCacheEntry terms. All calls run under torch.inference_mode().

    Example:
        >>> runner = ModuleRunner(vit, embed, prefill, decode, head, num_hidden_layers=32)
        >>> engine = GenerationEngine(runner, GenerationConfig(eos_token_id=2, image_token_id=49190))
    """

    def __init__(
        self,
        vision_encoder: Callable[..., Any],
        embed_tokens: Callable[..., Any],
        prefill_module: Callable[..., Any],
        decode_module: Callable[..., Any],
        head: Callable[..., Any],
        num_hidden_layers: int,
        device: str | torch.device = "cpu",
    ) -> None:
        if num_hidden_layers <= 0:
            raise ValueError(f"num_hidden_layers must be positive, got {num_hidden_layers}")
        self.vision_encoder = vision_encoder
        self.embed_tokens = embed_tokens
        self.prefill_module = prefill_module
        self.decode_module = decode_module
        self.head = head
        self.device = torch.device(device)
        self._num_hidden_layers = num_hidden_layers

    @property
    def num_hidden_layers(self) -> int:
        return self._num_hidden_layers

    @torch.inference_mode()
    def vision_encode(self, pixel_values: Tensor) -> Tensor:
        out = self.vision_encoder(pixel_values.unsqueeze(0).to(self.device))
        if isinstance(out, (list, tuple)):
            out = out[0]
        return out[0] if out.dim() == 3 else out

    @torch.inference_mode()
    def token_embed(self, input_ids: Tensor) -> Tensor:
        return self.embed_tokens(input_ids.to(self.device))

    @torch.inference_mode()
    def prefill(
        self,
        inputs_embeds: Tensor,
        attention_mask: Tensor,
        position_ids: Tensor,
    ) -> tuple[Tensor, KVCache]:
        outputs = self.prefill_module(
            inputs_embeds.to(self.device),
            attention_mask.to(self.device),
            position_ids.to(self.device),
        )
        return _to_cache(outputs, self._num_hidden_layers, "prefill")

    @torch.inference_mode()
    def decode_step(
        self,
        inputs_embeds: Tensor,
        attention_mask: Tensor,
        position_ids: Tensor,
        kv_cache: KVCache,
    ) -> tuple[Tensor, KVCache]:
        flat: list[Tensor] = []
        for entry in kv_cache:
            flat.extend((entry.key, entry.value))
        outputs = self.decode_module(
            inputs_embeds.to(self.device),
            attention_mask.to(self.device),
            position_ids.to(self.device),
            *flat,
        )
        return _to_cache(outputs, self._num_hidden_layers, "decode_step")

    @torch.inference_mode()
    def lm_head(self, hidden: Tensor) -> Tensor:
        return self.head(hidden.to(self.device))


__all__ = ["ModelRunner", "ModuleRunner"]
