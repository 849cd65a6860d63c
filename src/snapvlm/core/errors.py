"""Error taxonomy for the SnapVLM engine.

Why: Each failure mode of the preprocessing -> tokenization -> generation path
has a distinct cause and a distinct remedy (fix the artifact, fix the tiler,
fix the runner). Giving each its own exception type lets callers log and
surface them precisely, and lets the pipeline boundary translate them into an
``ErrorKind`` value without string matching.

Cancellation and the max-token limit are terminal *statuses*, not errors, so
they have no exception type here.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Machine-readable category of a fatal failure."""

    CONFIG = "config"
    INVALID_REGION = "invalid_region"
    CONFIG_MISMATCH = "config_mismatch"
    MODEL_CALL = "model_call"
    ENGINE_BUSY = "engine_busy"


class SnapVLMError(Exception):
    """Base class for all SnapVLM failures."""

    kind: ErrorKind = ErrorKind.CONFIG


class ConfigError(SnapVLMError):
    """Config or vocabulary artifact is missing or malformed.

    Raised at load time, never during tokenization.
    """

    kind = ErrorKind.CONFIG


class InvalidRegion(SnapVLMError):
    """A tile crop extends past the bounds of the source image."""

    kind = ErrorKind.INVALID_REGION

    def __init__(self, x: int, y: int, width: int, height: int, image_size: tuple[int, int]):
        self.region = (x, y, width, height)
        self.image_size = image_size
        super().__init__(
            f"Crop region (x={x}, y={y}, w={width}, h={height}) exceeds image "
            f"{image_size[0]}x{image_size[1]}"
        )


class ConfigMismatch(SnapVLMError):
    """Image-marker token count does not match available embedding slots."""

    kind = ErrorKind.CONFIG_MISMATCH

    def __init__(self, num_markers: int, num_slots: int):
        self.num_markers = num_markers
        self.num_slots = num_slots
        super().__init__(
            f"Prompt has {num_markers} image-marker tokens but {num_slots} "
            f"image embedding slots were supplied"
        )


class ModelCallFailure(SnapVLMError):
    """An external inference call failed; the generation is aborted.

    Attributes:
        stage: Name of the runner call that failed (e.g. "prefill", "decode_step").
        step: Decode step index when the failure happened, if applicable.
    """

    kind = ErrorKind.MODEL_CALL

    def __init__(self, stage: str, message: str, step: int | None = None):
        self.stage = stage
        self.step = step
        where = stage if step is None else f"{stage} (step {step})"
        super().__init__(f"{where} failed: {message}")


class EngineBusyError(SnapVLMError):
    """A second generation was started on an engine that is already running one."""

    kind = ErrorKind.ENGINE_BUSY


__all__ = [
    "ConfigError",
    "ConfigMismatch",
    "EngineBusyError",
    "ErrorKind",
    "InvalidRegion",
    "ModelCallFailure",
    "SnapVLMError",
]
