"""Per-layer key/value cache entries threaded between runner calls.

Why: The engine never grows or slices the cache itself; the runner returns a
complete replacement cache from every prefill and decode call and the engine
passes it back unchanged on the next step. What the engine *does* own is the
contract: one entry per decoder layer, every entry a (key, value) pair shaped
(batch=1, kv_heads, seq_len, head_dim), and seq_len equal to the position id
about to be decoded. Checking the contract at the seam turns a silently
corrupted cache into an immediate ModelCallFailure that names the stage.

Entries are frozen so a cache handed to the runner can be replaced wholesale
but never edited in place.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from torch import Tensor

from snapvlm.core.errors import ModelCallFailure


@dataclass(frozen=True)
class KVCacheEntry:
    """Cached attention keys and values for one decoder layer.

    Attributes:
        key: Tensor of shape (1, kv_heads, seq_len, head_dim)
        value: Tensor of shape (1, kv_heads, seq_len, head_dim)
    """

    key: Tensor
    value: Tensor

    @property
    def seq_len(self) -> int:
        return int(self.key.shape[-2])

    @property
    def num_heads(self) -> int:
        return int(self.key.shape[1])

    @property
    def head_dim(self) -> int:
        return int(self.key.shape[-1])

    def memory_bytes(self) -> int:
        """Bytes held by the key and value tensors."""
        return (
            self.key.numel() * self.key.element_size()
            + self.value.numel() * self.value.element_size()
        )


KVCache = tuple[KVCacheEntry, ...]


def as_cache(entries: Sequence[KVCacheEntry | tuple[Tensor, Tensor]]) -> KVCache:
    """Normalize a sequence of entries or (key, value) pairs into a KVCache."""
    out = []
    for entry in entries:
        if isinstance(entry, KVCacheEntry):
            out.append(entry)
        else:
            key, value = entry
            out.append(KVCacheEntry(key=key, value=value))
    return tuple(out)


def validate_cache(
    cache: Sequence[KVCacheEntry],
    num_layers: int,
    stage: str,
    step: int | None = None,
) -> KVCache:
    """Check a runner-returned cache holds exactly one well-formed entry per layer.

    Raises:
        ModelCallFailure: If the layer count or any entry's shape is wrong
    """
    if not isinstance(cache, Sequence):
        raise ModelCallFailure(
            stage, f"cache must be a sequence of KVCacheEntry, got {type(cache).__name__}", step=step
        )
    if len(cache) != num_layers:
        raise ModelCallFailure(
            stage, f"returned {len(cache)} cache entries, expected {num_layers}", step=step
        )
    for layer, entry in enumerate(cache):
        if not isinstance(entry, KVCacheEntry):
            raise ModelCallFailure(
                stage, f"cache entry {layer} is {type(entry).__name__}, not KVCacheEntry", step=step
            )
        if entry.key.dim() != 4 or entry.value.dim() != 4:
            raise ModelCallFailure(
                stage,
                f"cache entry {layer} must be 4-D (batch, heads, seq, head_dim), got "
                f"{tuple(entry.key.shape)} / {tuple(entry.value.shape)}",
                step=step,
            )
        if entry.key.shape[-2] != entry.value.shape[-2]:
            raise ModelCallFailure(
                stage,
                f"cache entry {layer} key/value lengths differ "
                f"({entry.key.shape[-2]} vs {entry.value.shape[-2]})",
                step=step,
            )
    return tuple(cache)


def check_cache_length(cache: Sequence[KVCacheEntry], position_id: int, step: int) -> None:
    """Strict mode: every entry must cover exactly the positions before position_id.

    Raises:
        ModelCallFailure: If any layer's seq_len differs from position_id
    """
    for layer, entry in enumerate(cache):
        if entry.seq_len != position_id:
            raise ModelCallFailure(
                "decode_step",
                f"cache layer {layer} holds {entry.seq_len} positions but position id is "
                f"{position_id}",
                step=step,
            )


def cache_memory_bytes(cache: Sequence[KVCacheEntry]) -> int:
    """Total bytes held by a cache."""
    return sum(entry.memory_bytes() for entry in cache)


__all__ = [
    "KVCache",
    "KVCacheEntry",
    "as_cache",
    "cache_memory_bytes",
    "check_cache_length",
    "validate_cache",
]
