"""Token vocabulary and BPE merge-rank table.

Loads the HuggingFace ``tokenizer.json`` layout (``model.vocab``,
``model.merges``, ``added_tokens``) that SmolVLM/nanoVLM checkpoints ship.

Why: Encoding, decoding and templating all look tokens up by string and by id,
and the merge ranks decide which pair BPE combines first. Holding all three in
one immutable object loaded once means a half-loaded or edited vocabulary can
never be observed mid-generation. Every problem with the artifact surfaces as
ConfigError at load time so tokenization itself never fails on a lookup.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from snapvlm.core.errors import ConfigError

logger = logging.getLogger(__name__)


def _parse_merge(entry: Any, index: int) -> tuple[str, str]:
    """Accept both "left right" strings and [left, right] pairs."""
    if isinstance(entry, str):
        parts = entry.split(" ")
        if len(parts) == 2 and parts[0] and parts[1]:
            return parts[0], parts[1]
    elif isinstance(entry, (list, tuple)) and len(entry) == 2:
        if all(isinstance(p, str) and p for p in entry):
            return entry[0], entry[1]
    raise ConfigError(f"Malformed merge rule at index {index}: {entry!r}")


class Vocabulary:
    """Bijective token <-> id mapping plus merge priorities.

    Attributes:
        token_to_id: Read-only mapping from token string to id
        id_to_token: Read-only mapping from id to token string
        merge_ranks: Read-only mapping from (left, right) to rank; lower merges first
        added_tokens: Tokens registered outside the BPE model (special tokens)

    Example:
        >>> vocab = Vocabulary.from_file("tokenizer.json")
        >>> vocab.get_id("<|im_end|>")
        2
    """

    def __init__(
        self,
        token_to_id: Mapping[str, int],
        merges: Iterable[tuple[str, str]] = (),
        added_tokens: Iterable[str] = (),
    ) -> None:
        """Build a vocabulary, checking that ids are unique and non-negative.

        Raises:
            ConfigError: If the vocabulary is empty or two tokens share an id
        """
        if not token_to_id:
            raise ConfigError("Vocabulary is empty")

        id_to_token: dict[int, str] = {}
        for token, idx in token_to_id.items():
            if not isinstance(idx, int) or isinstance(idx, bool) or idx < 0:
                raise ConfigError(f"Token {token!r} has invalid id {idx!r}")
            if idx in id_to_token:
                raise ConfigError(
                    f"Tokens {id_to_token[idx]!r} and {token!r} both map to id {idx}"
                )
            id_to_token[idx] = token

        ranks: dict[tuple[str, str], int] = {}
        for rank, pair in enumerate(merges):
            # First occurrence wins if the file repeats a rule
            ranks.setdefault(pair, rank)

        self._token_to_id = dict(token_to_id)
        self._id_to_token = id_to_token
        self._merge_ranks = ranks
        self.token_to_id: Mapping[str, int] = MappingProxyType(self._token_to_id)
        self.id_to_token: Mapping[int, str] = MappingProxyType(self._id_to_token)
        self.merge_ranks: Mapping[tuple[str, str], int] = MappingProxyType(self._merge_ranks)
        self.added_tokens: frozenset[str] = frozenset(added_tokens)

    def __len__(self) -> int:
        return len(self._token_to_id)

    def __contains__(self, token: object) -> bool:
        return token in self._token_to_id

    def __repr__(self) -> str:
        return f"Vocabulary(size={len(self)}, merges={len(self._merge_ranks)})"

    @property
    def max_id(self) -> int:
        return max(self._id_to_token)

    def get_id(self, token: str) -> int | None:
        """Id of an exact token string, or None if absent."""
        return self._token_to_id.get(token)

    def get_token(self, token_id: int) -> str | None:
        """Token string for an id, or None if absent."""
        return self._id_to_token.get(token_id)

    def rank(self, left: str, right: str) -> int | None:
        """Merge rank of an adjacent pair, or None if the pair never merges."""
        return self._merge_ranks.get((left, right))

    def merges(self) -> list[tuple[str, str]]:
        """Merge rules ordered by rank."""
        return sorted(self._merge_ranks, key=self._merge_ranks.__getitem__)

    def with_added_tokens(self, tokens: Iterable[str]) -> Vocabulary:
        """Return a copy with any absent tokens appended at fresh ids.

        Why: Base language-model tokenizers do not know the image, global-image
        and row/col location markers. Registering them as added tokens after the
        highest existing id keeps every original id stable, which the token
        embedding table depends on.
        """
        token_to_id = dict(self._token_to_id)
        added = set(self.added_tokens)
        next_id = self.max_id + 1
        for token in tokens:
            added.add(token)
            if token not in token_to_id:
                token_to_id[token] = next_id
                next_id += 1
        if len(token_to_id) != len(self._token_to_id):
            logger.info("Registered %d new tokens", len(token_to_id) - len(self._token_to_id))
        return Vocabulary(token_to_id, self.merges(), added)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Vocabulary:
        """Build a vocabulary from parsed tokenizer.json content.

        Accepts the HuggingFace layout ``{"model": {"vocab", "merges"},
        "added_tokens": [...]}`` and the flat ``{"vocab", "merges"}`` layout.

        Raises:
            ConfigError: If the vocab or merges are missing or malformed
        """
        if not isinstance(data, Mapping):
            raise ConfigError(f"Tokenizer data must be a JSON object, got {type(data).__name__}")

        model = data.get("model", data)
        if not isinstance(model, Mapping):
            raise ConfigError("Tokenizer 'model' section must be a JSON object")

        model_type = model.get("type")
        if model_type is not None and model_type != "BPE":
            raise ConfigError(f"Unsupported tokenizer model type {model_type!r}; expected 'BPE'")

        vocab = model.get("vocab")
        if not isinstance(vocab, Mapping):
            raise ConfigError("Tokenizer is missing a 'vocab' mapping")
        raw_merges = model.get("merges", [])
        if not isinstance(raw_merges, list):
            raise ConfigError("Tokenizer 'merges' must be a list")

        token_to_id = dict(vocab)
        added: list[str] = []
        for entry in data.get("added_tokens", []) or []:
            if not isinstance(entry, Mapping) or "content" not in entry or "id" not in entry:
                raise ConfigError(f"Malformed added_tokens entry: {entry!r}")
            content, idx = entry["content"], entry["id"]
            existing = token_to_id.get(content)
            if existing is not None and existing != idx:
                raise ConfigError(
                    f"Added token {content!r} has id {idx} but vocab maps it to {existing}"
                )
            token_to_id[content] = idx
            added.append(content)

        merges = [_parse_merge(entry, i) for i, entry in enumerate(raw_merges)]
        return cls(token_to_id, merges, added)

    @classmethod
    def from_file(cls, path: str | Path) -> Vocabulary:
        """Load a tokenizer.json file.

        Raises:
            ConfigError: If the file is missing, unreadable or malformed
        """
        path = Path(path)
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as exc:
            raise ConfigError(f"Tokenizer file not found: {path}") from exc
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ConfigError(f"Failed to parse tokenizer {path}: {exc}") from exc

        vocab = cls.from_dict(data)
        logger.info(
            "Loaded vocabulary from %s: %d tokens, %d merges, %d added tokens",
            path,
            len(vocab),
            len(vocab.merge_ranks),
            len(vocab.added_tokens),
        )
        return vocab


__all__ = ["Vocabulary"]
