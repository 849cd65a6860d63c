"""Immutable RGB image container and ingestion from files and raw buffers.

Why: Every downstream step (resize, crop, normalize) assumes a single internal
representation: 3-channel, 8-bit, interleaved RGB. Doing alpha stripping and
channel reordering once, at ingestion, keeps the preprocessing math free of
layout branches. Camera frames arrive as 4-channel buffers whose byte order
depends on the platform, so the layout is an explicit argument rather than a
guess.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import numpy as np
import torch
from PIL import Image as PILImage
from torch import Tensor

logger = logging.getLogger(__name__)


class PixelLayout(Enum):
    """Byte order of a raw pixel buffer.

    Each value is (channels per pixel, source indices of R, G, B).
    """

    RGB = (3, (0, 1, 2))
    BGR = (3, (2, 1, 0))
    RGBA = (4, (0, 1, 2))
    ARGB = (4, (1, 2, 3))
    BGRA = (4, (2, 1, 0))

    @property
    def channels(self) -> int:
        return self.value[0]

    @property
    def rgb_indices(self) -> tuple[int, int, int]:
        return self.value[1]


@dataclass(frozen=True)
class Image:
    """RGB image with uint8 pixels in (height, width, 3) layout.

    Attributes:
        width: Image width in pixels
        height: Image height in pixels
        pixels: uint8 tensor of shape (height, width, 3), interleaved RGB

    Why frozen: Tiles and resized copies are derived from an Image, never
    written back into it. A frozen dataclass documents that and prevents the
    accidental in-place edits that would corrupt a shared source image.
    """

    width: int
    height: int
    pixels: Tensor

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Image dimensions must be positive, got {self.width}x{self.height}")
        if self.pixels.dtype != torch.uint8:
            raise ValueError(f"pixels must be uint8, got {self.pixels.dtype}")
        expected = (self.height, self.width, 3)
        if tuple(self.pixels.shape) != expected:
            raise ValueError(f"pixels must have shape {expected}, got {tuple(self.pixels.shape)}")

    @property
    def size(self) -> tuple[int, int]:
        """(width, height), matching PIL's convention."""
        return (self.width, self.height)

    @classmethod
    def from_array(cls, array: np.ndarray | Tensor) -> Image:
        """Wrap an (H, W, 3) uint8 array or tensor.

        The data is copied so the caller's buffer can be reused.
        """
        if isinstance(array, np.ndarray):
            tensor = torch.from_numpy(np.ascontiguousarray(array, dtype=np.uint8).copy())
        else:
            tensor = array.detach().to(dtype=torch.uint8, device="cpu").contiguous().clone()
        if tensor.ndim != 3 or tensor.shape[-1] != 3:
            raise ValueError(f"Expected (H, W, 3) pixels, got shape {tuple(tensor.shape)}")
        height, width = int(tensor.shape[0]), int(tensor.shape[1])
        return cls(width=width, height=height, pixels=tensor)

    @classmethod
    def from_buffer(
        cls,
        buffer: bytes | bytearray | memoryview | np.ndarray,
        width: int,
        height: int,
        layout: PixelLayout = PixelLayout.RGBA,
    ) -> Image:
        """Ingest a raw 8-bit pixel buffer.

        Args:
            buffer: Row-major pixel bytes, `layout.channels` bytes per pixel
            width: Image width in pixels
            height: Image height in pixels
            layout: Byte order of each pixel

        Returns:
            Image in internal RGB representation (alpha dropped)

        Raises:
            ValueError: If the buffer length does not match width * height * channels
        """
        flat = np.frombuffer(buffer, dtype=np.uint8) if not isinstance(buffer, np.ndarray) else buffer
        flat = flat.reshape(-1).astype(np.uint8, copy=False)
        expected = width * height * layout.channels
        if flat.size != expected:
            raise ValueError(
                f"Buffer holds {flat.size} bytes, expected {expected} for "
                f"{width}x{height} {layout.name}"
            )
        hwc = flat.reshape(height, width, layout.channels)
        rgb = hwc[:, :, list(layout.rgb_indices)]
        logger.debug("Ingested %dx%d %s buffer", width, height, layout.name)
        return cls.from_array(rgb)

    @classmethod
    def from_file(cls, path: str | Path) -> Image:
        """Decode an image file with Pillow and convert it to RGB.

        Raises:
            FileNotFoundError: If the file does not exist
            PIL.UnidentifiedImageError: If the file is not a readable image
        """
        with PILImage.open(path) as img:
            rgb = img.convert("RGB")
            array = np.asarray(rgb, dtype=np.uint8)
        logger.info("Loaded image %s: %dx%d", path, array.shape[1], array.shape[0])
        return cls.from_array(array)

    @classmethod
    def from_pil(cls, img: PILImage.Image) -> Image:
        """Convert a PIL image (any mode) to the internal representation."""
        return cls.from_array(np.asarray(img.convert("RGB"), dtype=np.uint8))

    def to_pil(self) -> PILImage.Image:
        """Export as a PIL RGB image (useful for debugging tiles)."""
        return PILImage.fromarray(self.pixels.numpy())


__all__ = ["Image", "PixelLayout"]
