"""Byte-level BPE encoding and decoding.

Why: The SmolVLM language model uses a GPT-2 style byte-level BPE vocabulary:
every UTF-8 byte is first mapped to a printable unicode character (a space
becomes "Ġ", a newline "Ċ"), and merges operate on those characters. Working at
the byte level means no input text is ever out of vocabulary at the symbol
level, and decoding can reproduce the exact bytes of any merged piece.

Merge selection always takes the pair with the lowest rank among all adjacent
candidates, repeating until nothing merges. This is the standard algorithm;
scanning left-to-right and merging the first known pair gives different
pieces whenever merges compete.
"""

from __future__ import annotations

import codecs
import unicodedata
from collections.abc import Iterable
from functools import lru_cache

from snapvlm.tokenization.vocabulary import Vocabulary


@lru_cache(maxsize=1)
def bytes_to_unicode() -> dict[int, str]:
    """GPT-2's reversible byte -> printable character table.

    Printable latin-1 bytes map to themselves; the remaining 68 bytes
    (control characters, space, etc.) are shifted to code points from 256 up.
    """
    printable = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    chars = printable[:]
    n = 0
    for b in range(256):
        if b not in printable:
            printable.append(b)
            chars.append(256 + n)
            n += 1
    return dict(zip(printable, (chr(c) for c in chars)))


@lru_cache(maxsize=1)
def unicode_to_bytes() -> dict[str, int]:
    """Inverse of bytes_to_unicode."""
    return {char: byte for byte, char in bytes_to_unicode().items()}


def clean_text(text: str) -> str:
    """Drop control characters, collapse whitespace runs to one space, trim.

    Whitespace control characters (tab, newline, carriage return) count as
    whitespace rather than being dropped, so "a\\nb" becomes "a b".
    """
    out: list[str] = []
    pending_space = False
    for ch in text:
        if ch.isspace():
            pending_space = True
            continue
        if unicodedata.category(ch).startswith("C"):
            continue
        if pending_space and out:
            out.append(" ")
        pending_space = False
        out.append(ch)
    return "".join(out)


def _to_symbols(text: str) -> list[str]:
    table = bytes_to_unicode()
    return [table[b] for b in text.encode("utf-8")]


def _from_symbols(text: str) -> bytes:
    table = unicode_to_bytes()
    buf = bytearray()
    for ch in text:
        byte = table.get(ch)
        if byte is None:
            # Added tokens may contain characters outside the byte table
            buf.extend(ch.encode("utf-8"))
        else:
            buf.append(byte)
    return bytes(buf)


# Distinct words kept per tokenizer; covers a working vocabulary of prompts
BPE_CACHE_SIZE = 16384


class BPETokenizer:
    """Greedy lowest-rank BPE over a fixed Vocabulary.

    Attributes:
        vocab: Token table and merge ranks
        unk_id: Id substituted for pieces missing from the vocabulary
        skip_ids: Ids dropped by decode (special and image-marker tokens)

    Example:
        >>> tok = BPETokenizer(vocab, unk_id=vocab.get_id("<|endoftext|>"))
        >>> tok.decode(tok.encode("Hello world"))
        'Hello world'
    """

    def __init__(
        self,
        vocab: Vocabulary,
        unk_id: int,
        skip_ids: Iterable[int] = (),
        cache_size: int = BPE_CACHE_SIZE,
    ) -> None:
        self.vocab = vocab
        self.unk_id = unk_id
        self.skip_ids = frozenset(skip_ids)
        # Per-instance LRU keyed on the word; bounded for long-running processes
        self._cached_merge = lru_cache(maxsize=cache_size)(self._merge)

    def bpe(self, word: str) -> tuple[str, ...]:
        """Merge the byte symbols of one pre-tokenized word into pieces.

        Args:
            word: Raw word text (may carry a leading space)

        Returns:
            Tuple of byte-level piece strings
        """
        return self._cached_merge(word)

    def cache_info(self):
        return self._cached_merge.cache_info()

    def _merge(self, word: str) -> tuple[str, ...]:
        symbols = _to_symbols(word)
        while len(symbols) > 1:
            best_rank: int | None = None
            best_pair: tuple[str, str] | None = None
            for pair in zip(symbols, symbols[1:]):
                rank = self.vocab.rank(*pair)
                if rank is not None and (best_rank is None or rank < best_rank):
                    best_rank = rank
                    best_pair = pair
            if best_pair is None:
                break

            left, right = best_pair
            merged: list[str] = []
            i = 0
            while i < len(symbols):
                if i < len(symbols) - 1 and symbols[i] == left and symbols[i + 1] == right:
                    merged.append(left + right)
                    i += 2
                else:
                    merged.append(symbols[i])
                    i += 1
            symbols = merged

        return tuple(symbols)

    def encode_word(self, word: str) -> list[int]:
        """BPE one word and map its pieces to ids (unk for unknown pieces)."""
        lookup = self.vocab.token_to_id
        return [lookup.get(piece, self.unk_id) for piece in self.bpe(word)]

    def encode(self, text: str) -> list[int]:
        """Clean, split on spaces and BPE-encode text.

        Every word after the first is encoded with a leading space, which is
        how byte-level vocabularies represent word boundaries.
        """
        cleaned = clean_text(text)
        if not cleaned:
            return []
        ids: list[int] = []
        for i, word in enumerate(cleaned.split(" ")):
            ids.extend(self.encode_word(word if i == 0 else " " + word))
        return ids

    def token_bytes(self, token_id: int) -> bytes:
        """Raw bytes a single id decodes to; empty for skipped or unknown ids."""
        if token_id in self.skip_ids:
            return b""
        token = self.vocab.get_token(token_id)
        if token is None:
            return b""
        return _from_symbols(token)

    def decode(self, ids: Iterable[int]) -> str:
        """Concatenate the bytes of non-special ids and decode as UTF-8.

        Invalid or truncated UTF-8 sequences become U+FFFD.
        """
        data = b"".join(self.token_bytes(int(i)) for i in ids)
        return data.decode("utf-8", errors="replace")


class StreamingDecoder:
    """Incremental decode that never emits a partially formed character.

    Why: Byte-level BPE splits multi-byte characters (accents, CJK, emoji)
    across tokens. Decoding each token on its own would emit replacement
    characters for the halves; an incremental UTF-8 decoder buffers the
    leading bytes until the character completes.
    """

    def __init__(self, tokenizer: BPETokenizer) -> None:
        self.tokenizer = tokenizer
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def push(self, token_id: int) -> str:
        """Feed one id; return whatever text is now complete (maybe "")."""
        return self._decoder.decode(self.tokenizer.token_bytes(token_id))

    def flush(self) -> str:
        """Drain buffered bytes at end of stream."""
        return self._decoder.decode(b"", final=True)


__all__ = [
    "BPETokenizer",
    "StreamingDecoder",
    "bytes_to_unicode",
    "clean_text",
    "unicode_to_bytes",
]
