"""Greedy autoregressive generation over a split prefill/decode runner.

Why: On-device VLM exports split the transformer into separately invoked
graphs, so the generation loop cannot be a single ``model.generate`` call. The
engine owns that loop: it merges text and image embeddings, runs one prefill
over the whole prompt, then threads the runner's KV cache through one decode
call per new token until eos, the token budget, or cancellation.

State machine::

    INIT -> PREFILL -> DECODING -> TERMINATED
                                   status: COMPLETED | MAX_TOKENS | CANCELLED | ERROR

Token accounting: the prefill produces the first token, so a budget of N
tokens means at most N - 1 decode calls. The eos token counts as generated.
Cancellation is cooperative and checked only at the top of a decode iteration,
before any blocking runner call; a call already in flight always completes.

Embedding/prediction flow per step::

    prev token -> token_embed -> decode_step(cache) -> hidden -> lm_head -> argmax
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import torch
from torch import Tensor

from snapvlm.core.config import SnapVLMConfig
from snapvlm.core.errors import (
    ConfigError,
    ConfigMismatch,
    EngineBusyError,
    ModelCallFailure,
    SnapVLMError,
)
from snapvlm.inference.kv_cache import (
    KVCache,
    cache_memory_bytes,
    check_cache_length,
    validate_cache,
)
from snapvlm.inference.runner import ModelRunner
from snapvlm.vision.tiling import TileGrid

logger = logging.getLogger(__name__)


class GenerationPhase(Enum):
    INIT = "init"
    PREFILL = "prefill"
    DECODING = "decoding"
    TERMINATED = "terminated"


class GenerationStatus(Enum):
    """Terminal outcome of one generation call."""

    COMPLETED = "completed"
    MAX_TOKENS = "max_tokens"
    CANCELLED = "cancelled"
    ERROR = "error"


class ProgressStage(Enum):
    TOKENIZING = "tokenizing"
    ENCODING_IMAGE = "encoding_image"
    PREFILL_COMPLETE = "prefill_complete"
    DECODE_STEP = "decode_step"
    FINISHED = "finished"


@dataclass(frozen=True)
class ProgressEvent:
    """Advisory notification; observers cannot influence control flow.

    Attributes:
        stage: What just happened
        step: Number of tokens generated so far, where meaningful
        token_id: Token produced by this step, if any
        status: Terminal status, on FINISHED only
    """

    stage: ProgressStage
    step: int | None = None
    token_id: int | None = None
    status: GenerationStatus | None = None


ProgressObserver = Callable[[ProgressEvent], Any]


def notify(observer: ProgressObserver | None, event: ProgressEvent) -> None:
    """Deliver an event, logging and discarding observer failures."""
    if observer is None:
        return
    try:
        observer(event)
    except Exception:
        logger.warning("Progress observer failed on %s", event.stage.value, exc_info=True)


class CancellationToken:
    """Thread-safe cooperative stop signal.

    Example:
        >>> cancel = CancellationToken()
        >>> threading.Timer(5.0, cancel.cancel).start()
        >>> engine.generate(ids, embeds, cancel=cancel).status
        <GenerationStatus.CANCELLED: 'cancelled'>
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class GenerationConfig:
    """Engine settings resolved to token ids.

    Attributes:
        eos_token_id: Sampling this id completes generation
        image_token_id: Positions holding this id receive image embeddings
        max_new_tokens: Upper bound on generated tokens (eos included)
        vision_workers: Threads for tile encoding; 1 encodes sequentially
        strict_cache: Check every cache entry's length against the position id
    """

    eos_token_id: int
    image_token_id: int
    max_new_tokens: int = 256
    vision_workers: int = 1
    strict_cache: bool = False

    def __post_init__(self) -> None:
        if self.max_new_tokens <= 0:
            raise ConfigError(f"max_new_tokens must be positive, got {self.max_new_tokens}")
        if self.vision_workers <= 0:
            raise ConfigError(f"vision_workers must be positive, got {self.vision_workers}")

    @classmethod
    def from_config(
        cls, config: SnapVLMConfig, eos_token_id: int, image_token_id: int
    ) -> GenerationConfig:
        """Derive engine settings from the shared config and resolved ids."""
        return cls(
            eos_token_id=eos_token_id,
            image_token_id=image_token_id,
            max_new_tokens=config.max_new_tokens,
            vision_workers=config.vision_workers,
            strict_cache=config.strict_cache,
        )


@dataclass
class GenerationState:
    """Mutable state of one in-flight generation.

    Created per call and owned by that call only. ``kv_cache`` is replaced
    wholesale after every runner call, never edited.
    """

    phase: GenerationPhase = GenerationPhase.INIT
    seq_len: int = 0
    kv_cache: KVCache = ()
    last_token: int | None = None
    generated: list[int] = field(default_factory=list)
    status: GenerationStatus | None = None
    error: SnapVLMError | None = None

    def record(self, token_id: int) -> None:
        self.last_token = token_id
        self.generated.append(token_id)


@dataclass(frozen=True)
class GenerationOutput:
    token_ids: list[int]
    status: GenerationStatus

    @property
    def num_tokens(self) -> int:
        return len(self.token_ids)


def greedy_select(logits: Tensor) -> int:
    """Argmax over the last position's logits; ties go to the lowest id."""
    flat = logits.reshape(-1, logits.shape[-1])[-1]
    return int(torch.argmax(flat).item())


def _describe(value: Any) -> str:
    if isinstance(value, Tensor):
        return f"tensor of shape {tuple(value.shape)}"
    return type(value).__name__


class GenerationEngine:
    """Drive prefill and decode calls on a ModelRunner.

    Attributes:
        runner: Inference backend, used exclusively by this engine
        config: Token ids and loop limits

    Why: Only one generation may use an engine at a time because the runner
    and the cache it returns are stateful between calls. A second caller gets
    EngineBusyError immediately instead of interleaving decode steps with the
    first; use separate engines for parallel work.
    """

    def __init__(self, runner: ModelRunner, config: GenerationConfig) -> None:
        self.runner = runner
        self.config = config
        self._lock = threading.Lock()

    def _call(self, stage: str, fn: Callable[..., Any], *args: Any, step: int | None = None) -> Any:
        """Invoke a runner method, wrapping any failure as ModelCallFailure."""
        try:
            return fn(*args)
        except ModelCallFailure:
            raise
        except Exception as exc:
            raise ModelCallFailure(stage, f"{type(exc).__name__}: {exc}", step=step) from exc

    def _forward(
        self, stage: str, fn: Callable[..., Any], *args: Any, layers: int, step: int | None = None
    ) -> tuple[Tensor, KVCache]:
        """Run prefill or decode_step; return the last position's hidden state and the cache.

        Raises:
            ModelCallFailure: If the call fails or its output is not (hidden, cache)
                with a (1, L, D) hidden state
        """
        outputs = self._call(stage, fn, *args, step=step)
        try:
            hidden, cache = outputs
            last = hidden[:, -1:, :]
        except (IndexError, TypeError, ValueError) as exc:
            raise ModelCallFailure(
                stage, f"malformed output {_describe(outputs)}: {exc}", step=step
            ) from exc
        return last, validate_cache(cache, layers, stage, step=step)

    def _next_token(self, hidden: Tensor, step: int | None = None) -> int:
        logits = self._call("lm_head", self.runner.lm_head, hidden, step=step)
        try:
            return greedy_select(logits)
        except (AttributeError, IndexError, RuntimeError, TypeError) as exc:
            raise ModelCallFailure(
                "lm_head", f"malformed logits {_describe(logits)}: {exc}", step=step
            ) from exc

    def encode_image(self, grid: TileGrid, observer: ProgressObserver | None = None) -> Tensor:
        """Vision-encode every tile and concatenate in tile order.

        Returns:
            Tensor (num_tiles * tokens_per_tile, hidden_size)

        Why: Tiles are independent, so with vision_workers > 1 they are encoded
        on a thread pool. ``Executor.map`` yields results in submission order,
        which keeps embedding slots in the same order as the image markers no
        matter which tile finishes first.
        """
        notify(observer, ProgressEvent(ProgressStage.ENCODING_IMAGE))

        def encode(pixel_values: Tensor) -> Tensor:
            out = self._call("vision_encode", self.runner.vision_encode, pixel_values)
            if not isinstance(out, Tensor) or out.dim() not in (2, 3):
                raise ModelCallFailure(
                    "vision_encode", f"expected a 2-D or 3-D tensor, got {_describe(out)}"
                )
            return out

        pixels = [t.pixel_values for t in grid.tiles]
        workers = min(self.config.vision_workers, len(pixels))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="snapvlm-vision") as pool:
                outputs = list(pool.map(encode, pixels))
        else:
            outputs = [encode(p) for p in pixels]

        embeddings = torch.cat([o.reshape(-1, o.shape[-1]) for o in outputs], dim=0)
        logger.debug("Encoded %d tiles into %d embedding rows", len(outputs), embeddings.shape[0])
        return embeddings

    def merge_embeddings(self, token_ids: Sequence[int], image_embeddings: Tensor | None) -> Tensor:
        """Token embeddings with image-marker positions replaced by image rows.

        Raises:
            ConfigMismatch: If marker count differs from image embedding rows
            ModelCallFailure: If token embedding fails or dimensions disagree
        """
        ids = torch.tensor([list(token_ids)], dtype=torch.long)
        positions = (ids[0] == self.config.image_token_id).nonzero(as_tuple=True)[0]
        num_slots = 0 if image_embeddings is None else int(image_embeddings.shape[0])
        if positions.numel() != num_slots:
            raise ConfigMismatch(int(positions.numel()), num_slots)

        embeds = self._call("token_embed", self.runner.token_embed, ids)
        if not isinstance(embeds, Tensor) or embeds.dim() != 3:
            raise ModelCallFailure(
                "token_embed", f"expected a (1, L, D) tensor, got {_describe(embeds)}"
            )
        if num_slots == 0:
            return embeds

        if image_embeddings.shape[-1] != embeds.shape[-1]:
            raise ModelCallFailure(
                "vision_encode",
                f"image embedding width {image_embeddings.shape[-1]} does not match "
                f"token embedding width {embeds.shape[-1]}",
            )
        merged = embeds.clone()
        merged[0, positions] = image_embeddings.to(device=merged.device, dtype=merged.dtype)
        return merged

    def iter_generate(
        self,
        token_ids: Sequence[int],
        image_embeddings: Tensor | None = None,
        max_new_tokens: int | None = None,
        cancel: CancellationToken | None = None,
        observer: ProgressObserver | None = None,
        state: GenerationState | None = None,
    ) -> Iterator[int]:
        """Yield generated token ids one at a time.

        Args:
            token_ids: Templated prompt
            image_embeddings: Rows for the image markers, in marker order
            max_new_tokens: Overrides the configured budget
            cancel: Cooperative stop signal
            observer: Receives advisory ProgressEvents
            state: Fresh state to run in, so the caller can read the final status

        Raises:
            EngineBusyError: If another generation is running on this engine
            ConfigMismatch: If image markers and embedding rows disagree
            ModelCallFailure: If any runner call fails

        All errors are raised on first iteration, since this is a generator.
        """
        budget = self.config.max_new_tokens if max_new_tokens is None else max_new_tokens
        if budget <= 0:
            raise ConfigError(f"max_new_tokens must be positive, got {budget}")
        if not self._lock.acquire(blocking=False):
            raise EngineBusyError("Engine is already running a generation")

        state = state if state is not None else GenerationState()
        eos = self.config.eos_token_id
        try:
            layers = self._call("num_hidden_layers", lambda: self.runner.num_hidden_layers)
            embeds = self.merge_embeddings(token_ids, image_embeddings)

            state.phase = GenerationPhase.PREFILL
            length = int(embeds.shape[1])
            attention_mask = torch.ones((1, length), dtype=torch.long)
            position_ids = torch.arange(length, dtype=torch.long).unsqueeze(0)
            hidden, state.kv_cache = self._forward(
                "prefill", self.runner.prefill, embeds, attention_mask, position_ids, layers=layers
            )
            state.seq_len = length

            token = self._next_token(hidden)
            state.record(token)
            logger.debug("Prefill over %d positions produced token %d", length, token)
            notify(observer, ProgressEvent(ProgressStage.PREFILL_COMPLETE, step=1, token_id=token))
            yield token

            if token == eos:
                state.status = GenerationStatus.COMPLETED
                return

            state.phase = GenerationPhase.DECODING
            while len(state.generated) < budget:
                if cancel is not None and cancel.is_cancelled:
                    state.status = GenerationStatus.CANCELLED
                    return

                step = len(state.generated)
                if self.config.strict_cache:
                    check_cache_length(state.kv_cache, state.seq_len, step)

                last = torch.tensor([[state.last_token]], dtype=torch.long)
                token_embeds = self._call("token_embed", self.runner.token_embed, last, step=step)
                attention_mask = torch.ones((1, state.seq_len + 1), dtype=torch.long)
                position_ids = torch.tensor([[state.seq_len]], dtype=torch.long)
                hidden, state.kv_cache = self._forward(
                    "decode_step",
                    self.runner.decode_step,
                    token_embeds,
                    attention_mask,
                    position_ids,
                    state.kv_cache,
                    layers=layers,
                    step=step,
                )
                state.seq_len += 1

                token = self._next_token(hidden, step=step)
                state.record(token)
                notify(
                    observer,
                    ProgressEvent(ProgressStage.DECODE_STEP, step=len(state.generated), token_id=token),
                )
                yield token

                if token == eos:
                    state.status = GenerationStatus.COMPLETED
                    return

            state.status = GenerationStatus.MAX_TOKENS
        except SnapVLMError as exc:
            state.status = GenerationStatus.ERROR
            state.error = exc
            logger.error("Generation failed: %s", exc)
            raise
        except GeneratorExit:
            # Consumer stopped iterating early
            state.status = GenerationStatus.CANCELLED
            raise
        finally:
            if state.status is None:
                state.status = GenerationStatus.ERROR
            state.phase = GenerationPhase.TERMINATED
            self._lock.release()
            logger.info(
                "Generation finished: %s after %d tokens (cache %d bytes)",
                state.status.value,
                len(state.generated),
                cache_memory_bytes(state.kv_cache),
            )
            notify(
                observer,
                ProgressEvent(ProgressStage.FINISHED, step=len(state.generated), status=state.status),
            )

    def generate(
        self,
        token_ids: Sequence[int],
        image_embeddings: Tensor | None = None,
        max_new_tokens: int | None = None,
        cancel: CancellationToken | None = None,
        observer: ProgressObserver | None = None,
    ) -> GenerationOutput:
        """Run a generation to termination.

        Raises:
            EngineBusyError, ConfigMismatch, ModelCallFailure: As iter_generate
        """
        state = GenerationState()
        for _ in self.iter_generate(
            token_ids,
            image_embeddings,
            max_new_tokens=max_new_tokens,
            cancel=cancel,
            observer=observer,
            state=state,
        ):
            pass
        return GenerationOutput(token_ids=list(state.generated), status=state.status)


__all__ = [
    "CancellationToken",
    "GenerationConfig",
    "GenerationEngine",
    "GenerationOutput",
    "GenerationPhase",
    "GenerationState",
    "GenerationStatus",
    "ProgressEvent",
    "ProgressObserver",
    "ProgressStage",
    "greedy_select",
    "notify",
]
