"""End-to-end image + prompt -> text pipeline with result-valued errors.

Why: Callers of the engine (an app UI, a service handler, a script) need one
object that owns the loaded config, tokenizer and runner, and a boundary that
reports failures as values. ``VisionLanguagePipeline`` is that object: it is
constructed explicitly by the caller, so several independent pipelines (or
test doubles) can coexist in one process. Inside, errors are exceptions;
``run`` and ``stream`` convert every SnapVLMError into a GenerationResult or a
final StreamEvent carrying an ErrorInfo, so nothing raised by the core
crosses this boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from torch import Tensor

from snapvlm.core.config import SnapVLMConfig
from snapvlm.core.errors import ConfigError, ErrorKind, SnapVLMError
from snapvlm.inference.generation import (
    CancellationToken,
    GenerationConfig,
    GenerationEngine,
    GenerationState,
    GenerationStatus,
    ProgressEvent,
    ProgressObserver,
    ProgressStage,
    notify,
)
from snapvlm.inference.runner import ModelRunner
from snapvlm.tokenization.template import Tokenizer
from snapvlm.vision.image import Image
from snapvlm.vision.tiling import ImageTiler, TileGrid

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"
TOKENIZER_FILENAME = "tokenizer.json"


@dataclass(frozen=True)
class ErrorInfo:
    """Error details reported at the pipeline boundary.

    Attributes:
        kind: Category of failure
        message: Human-readable description
        stage: Runner call that failed, for MODEL_CALL errors
    """

    kind: ErrorKind
    message: str
    stage: str | None = None

    @classmethod
    def from_exception(cls, exc: SnapVLMError) -> ErrorInfo:
        return cls(kind=exc.kind, message=str(exc), stage=getattr(exc, "stage", None))


@dataclass(frozen=True)
class GenerationResult:
    """Complete outcome of one run.

    ``text`` and ``token_ids`` hold whatever was generated before termination,
    including on CANCELLED and ERROR.
    """

    text: str
    status: GenerationStatus
    token_ids: list[int]
    error: ErrorInfo | None = None

    @property
    def ok(self) -> bool:
        return self.status is not GenerationStatus.ERROR


@dataclass(frozen=True)
class StreamEvent:
    """One streamed fragment; the last event of a stream carries the status."""

    text: str = ""
    token_id: int | None = None
    status: GenerationStatus | None = None
    error: ErrorInfo | None = None

    @property
    def is_final(self) -> bool:
        return self.status is not None


@dataclass(frozen=True)
class PreparedInputs:
    """Templated prompt and the image embeddings that fill its markers."""

    token_ids: list[int]
    grid: TileGrid | None
    image_embeddings: Tensor | None

    @property
    def num_image_tokens(self) -> int:
        return 0 if self.image_embeddings is None else int(self.image_embeddings.shape[0])


class VisionLanguagePipeline:
    """Tiler, tokenizer and generation engine bound to one runner.

    Attributes:
        config: Shared configuration
        tokenizer: Vocabulary-backed tokenizer and templater
        tiler: Image tiler built from config.tiling
        engine: Generation engine owning the runner

    Example:
        >>> pipeline = VisionLanguagePipeline.from_directory("models/nanovlm", runner)
        >>> result = pipeline.run(Image.from_file("cat.jpg"), "What is in this image?")
        >>> result.status, result.text
        (<GenerationStatus.COMPLETED: 'completed'>, 'A cat sitting on a sofa.')
    """

    def __init__(self, config: SnapVLMConfig, tokenizer: Tokenizer, runner: ModelRunner) -> None:
        """Bind components together.

        Raises:
            ConfigError: If the runner's layer count disagrees with the config
        """
        if runner.num_hidden_layers != config.num_hidden_layers:
            raise ConfigError(
                f"Runner has {runner.num_hidden_layers} layers but config declares "
                f"{config.num_hidden_layers}"
            )
        self.config = config
        self.tokenizer = tokenizer
        self.tiler = ImageTiler(config.tiling)
        self.engine = GenerationEngine(
            runner,
            GenerationConfig.from_config(config, tokenizer.eos_id, tokenizer.image_id),
        )

    @classmethod
    def from_directory(
        cls,
        path: str | Path,
        runner: ModelRunner,
        register_markers: bool = False,
    ) -> VisionLanguagePipeline:
        """Load config.json and tokenizer.json from a model directory.

        Raises:
            ConfigError: If either file is missing or malformed
        """
        path = Path(path)
        config = SnapVLMConfig.from_json(path / CONFIG_FILENAME)
        tokenizer = Tokenizer.from_file(
            path / TOKENIZER_FILENAME, config, register_markers=register_markers
        )
        return cls(config, tokenizer, runner)

    def prepare(
        self,
        image: Image | None,
        prompt: str,
        observer: ProgressObserver | None = None,
    ) -> PreparedInputs:
        """Tile and encode the image, then template the prompt around it."""
        grid = None
        embeddings = None
        if image is not None:
            grid = self.tiler.tile(image)
            embeddings = self.engine.encode_image(grid, observer=observer)

        notify(observer, ProgressEvent(ProgressStage.TOKENIZING))
        token_ids = self.tokenizer.apply_template(prompt, grid)
        logger.info(
            "Prepared prompt: %d tokens, %d image tokens",
            len(token_ids),
            0 if embeddings is None else embeddings.shape[0],
        )
        return PreparedInputs(token_ids=token_ids, grid=grid, image_embeddings=embeddings)

    def run(
        self,
        image: Image | None,
        prompt: str,
        max_new_tokens: int | None = None,
        cancel: CancellationToken | None = None,
        observer: ProgressObserver | None = None,
    ) -> GenerationResult:
        """Generate a full response; never raises SnapVLMError."""
        state = GenerationState()
        try:
            inputs = self.prepare(image, prompt, observer=observer)
            for _ in self.engine.iter_generate(
                inputs.token_ids,
                inputs.image_embeddings,
                max_new_tokens=max_new_tokens,
                cancel=cancel,
                observer=observer,
                state=state,
            ):
                pass
        except SnapVLMError as exc:
            logger.error("Pipeline run failed (%s): %s", exc.kind.value, exc)
            return GenerationResult(
                text=self.tokenizer.decode(state.generated),
                status=GenerationStatus.ERROR,
                token_ids=list(state.generated),
                error=ErrorInfo.from_exception(exc),
            )

        return GenerationResult(
            text=self.tokenizer.decode(state.generated),
            status=state.status,
            token_ids=list(state.generated),
        )

    def stream(
        self,
        image: Image | None,
        prompt: str,
        max_new_tokens: int | None = None,
        cancel: CancellationToken | None = None,
        observer: ProgressObserver | None = None,
    ) -> Iterator[StreamEvent]:
        """Yield text fragments as tokens are generated, then a final status event.

        Fragments never split a multi-byte character. Errors end the stream
        with a final event whose status is ERROR.
        """
        state = GenerationState()
        decoder = self.tokenizer.stream_decoder()
        error: ErrorInfo | None = None
        tokens = None
        try:
            inputs = self.prepare(image, prompt, observer=observer)
            tokens = self.engine.iter_generate(
                inputs.token_ids,
                inputs.image_embeddings,
                max_new_tokens=max_new_tokens,
                cancel=cancel,
                observer=observer,
                state=state,
            )
            for token in tokens:
                yield StreamEvent(text=decoder.push(token), token_id=token)
        except SnapVLMError as exc:
            logger.error("Pipeline stream failed (%s): %s", exc.kind.value, exc)
            error = ErrorInfo.from_exception(exc)
        finally:
            if tokens is not None:
                tokens.close()

        status = GenerationStatus.ERROR if error is not None else state.status
        yield StreamEvent(text=decoder.flush(), status=status, error=error)


__all__ = [
    "CONFIG_FILENAME",
    "TOKENIZER_FILENAME",
    "ErrorInfo",
    "GenerationResult",
    "PreparedInputs",
    "StreamEvent",
    "VisionLanguagePipeline",
]
