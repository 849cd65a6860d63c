"""Bicubic resize, crop and normalization on uint8 RGB images.

Why: The vision encoder was trained on tiles produced by a specific bicubic
kernel (4x4 neighbourhood, edge indices clamped, Catmull-Rom-like cubic
coefficients). Using a library resampler with a different filter support or
anti-aliasing shifts pixel values by a few levels, which is enough to change
generated captions. The kernel is implemented directly and vectorised with
torch instead of looping per pixel.

The kernel is separable: each output pixel interpolates four source rows
horizontally and then combines those four values vertically with the same
cubic. We therefore run one horizontal pass over every source row followed by
one vertical pass, which gives identical values to the per-pixel 4x4 form.
"""

from __future__ import annotations

import torch
from torch import Tensor

from snapvlm.core.errors import InvalidRegion
from snapvlm.vision.image import Image


def _cubic(p0: Tensor, p1: Tensor, p2: Tensor, p3: Tensor, t: Tensor) -> Tensor:
    """Cubic through p1 at t=0 using neighbours p0 (t=-1), p2 (t=1), p3 (t=2)."""
    d0 = p0 - p1
    d2 = p2 - p1
    d3 = p3 - p1
    a1 = -d0 / 3.0 + d2 - d3 / 6.0
    a2 = d0 / 2.0 + d2 / 2.0
    a3 = -d0 / 6.0 - d2 / 2.0 + d3 / 6.0
    return p1 + a1 * t + a2 * t * t + a3 * t * t * t


def _sample_grid(src_len: int, dst_len: int) -> tuple[Tensor, Tensor]:
    """Source taps and fractional offsets for each output coordinate.

    Returns:
        (indices, frac): indices is (dst_len, 4) int64 of clamped source
        positions [x-1, x, x+1, x+2]; frac is (dst_len,) float32 in [0, 1).
    """
    scale = src_len / dst_len
    coords = torch.arange(dst_len, dtype=torch.float32) * scale
    base = torch.floor(coords)
    frac = coords - base
    offsets = torch.arange(-1, 3, dtype=torch.int64)
    indices = (base.to(torch.int64)[:, None] + offsets[None, :]).clamp_(0, src_len - 1)
    return indices, frac


def bicubic_resize(image: Image, width: int, height: int) -> Image:
    """Resize an image to exactly (width, height) with bicubic interpolation.

    Args:
        image: Source image
        width: Target width in pixels
        height: Target height in pixels

    Returns:
        New Image of the requested size; values rounded and clamped to [0, 255]

    Why: Output dimensions always equal the requested target, regardless of the
    scale factor. With target == source every sample lands on a pixel centre
    (frac == 0) and the source is reproduced exactly.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Target size must be positive, got {width}x{height}")

    src = image.pixels.to(torch.float32)  # (H, W, 3)

    col_idx, fx = _sample_grid(image.width, width)
    row_idx, fy = _sample_grid(image.height, height)

    # Horizontal pass over every source row: (H, W', 4, 3) -> (H, W', 3)
    taps = src[:, col_idx]
    fx = fx[None, :, None]
    horizontal = _cubic(taps[:, :, 0], taps[:, :, 1], taps[:, :, 2], taps[:, :, 3], fx)

    # Vertical pass: (H', 4, W', 3) -> (H', W', 3)
    taps = horizontal[row_idx]
    fy = fy[:, None, None]
    out = _cubic(taps[:, 0], taps[:, 1], taps[:, 2], taps[:, 3], fy)

    # Round half away from zero after clamping, matching C rounding on [0, 255]
    pixels = torch.floor(out.clamp_(0.0, 255.0) + 0.5).to(torch.uint8)
    return Image(width=width, height=height, pixels=pixels.contiguous())


def crop_image(image: Image, x: int, y: int, width: int, height: int) -> Image:
    """Copy the (x, y, width, height) region out of an image.

    Raises:
        InvalidRegion: If the region is empty or not fully inside the image
    """
    if (
        width <= 0
        or height <= 0
        or x < 0
        or y < 0
        or x + width > image.width
        or y + height > image.height
    ):
        raise InvalidRegion(x, y, width, height, image.size)
    pixels = image.pixels[y : y + height, x : x + width].clone()
    return Image(width=width, height=height, pixels=pixels)


def to_chw_float(image: Image) -> Tensor:
    """Convert interleaved uint8 RGB to channel-first float32 in [0, 1].

    No mean/std normalization is applied here; that belongs to the vision
    encoder.

    Returns:
        Tensor of shape (3, height, width)
    """
    return image.pixels.permute(2, 0, 1).to(torch.float32).div_(255.0).contiguous()


__all__ = ["bicubic_resize", "crop_image", "to_chw_float"]
