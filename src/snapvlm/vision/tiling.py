"""Dynamic-resize image tiling into a global view plus a grid of patches.

Why: The vision encoder only accepts fixed-size square tiles, but photos come
in arbitrary resolutions and aspect ratios. Resizing the whole image to one
tile throws away detail; tiling at native resolution explodes the token count.
The dynamic resize picks the smallest patch-aligned size that keeps the aspect
ratio (capped at max_side_len), splits it into patch_size crops, and adds one
downsampled whole-image "global view" so the language model sees both detail
and context.

Tile count per image = 1 (1x1 grid, no global view) or 1 + grid_h * grid_w.
Each tile costs tokens_per_tile prompt tokens, so max_side_len is effectively
the compute budget knob.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import torch
from torch import Tensor

from snapvlm.core.config import TilingConfig
from snapvlm.vision.image import Image
from snapvlm.vision.resize import bicubic_resize, crop_image, to_chw_float

logger = logging.getLogger(__name__)


class TileRole(Enum):
    """Whether a tile is the whole-image view or one grid cell."""

    GLOBAL = "global"
    PATCH = "patch"


@dataclass(frozen=True)
class Tile:
    """One normalized vision-encoder input.

    Attributes:
        pixel_values: float32 tensor (3, patch_size, patch_size) in [0, 1]
        role: GLOBAL for the downsampled whole image, PATCH for a grid cell
        row: 0-based grid row for patches, None for the global view
        col: 0-based grid column for patches, None for the global view
    """

    pixel_values: Tensor
    role: TileRole
    row: int | None = None
    col: int | None = None

    @property
    def size(self) -> int:
        return int(self.pixel_values.shape[-1])


@dataclass(frozen=True)
class TileGrid:
    """Ordered tiles for one image and the grid they came from.

    Attributes:
        grid_h: Number of patch rows
        grid_w: Number of patch columns
        tiles: Global view first (if any), then patches in row-major order

    Why: The order of `tiles` is the order in which image embeddings are
    consumed by image-marker positions in the prompt. The invariant is checked
    at construction so a malformed grid can never reach the engine.
    """

    grid_h: int
    grid_w: int
    tiles: tuple[Tile, ...]

    def __post_init__(self) -> None:
        if self.grid_h <= 0 or self.grid_w <= 0:
            raise ValueError(f"Grid dimensions must be positive, got {self.grid_h}x{self.grid_w}")
        if len(self.tiles) != self.expected_tiles(self.grid_h, self.grid_w):
            raise ValueError(
                f"{self.grid_h}x{self.grid_w} grid requires "
                f"{self.expected_tiles(self.grid_h, self.grid_w)} tiles, got {len(self.tiles)}"
            )

    @staticmethod
    def expected_tiles(grid_h: int, grid_w: int) -> int:
        """Tile count implied by the grid shape."""
        if grid_h == 1 and grid_w == 1:
            return 1
        return 1 + grid_h * grid_w

    @property
    def is_single(self) -> bool:
        return self.grid_h == 1 and self.grid_w == 1

    @property
    def has_global_view(self) -> bool:
        return not self.is_single

    @property
    def num_tiles(self) -> int:
        return len(self.tiles)

    @property
    def num_patches(self) -> int:
        return self.grid_h * self.grid_w

    def stack(self) -> Tensor:
        """All tiles as one (num_tiles, 3, P, P) tensor, in consumption order."""
        return torch.stack([t.pixel_values for t in self.tiles])

    def __iter__(self):
        return iter(self.tiles)

    def __len__(self) -> int:
        return len(self.tiles)


def align_up(value: int, multiple: int) -> int:
    """Round value up to the next multiple."""
    return ((value + multiple - 1) // multiple) * multiple


def compute_dynamic_resize(
    height: int,
    width: int,
    max_side_len: int,
    patch_size: int,
    resize_to_max: bool,
) -> tuple[int, int]:
    """Patch-aligned target size preserving aspect ratio.

    Args:
        height: Source height
        width: Source width
        max_side_len: Cap on the target long side
        patch_size: Alignment unit for both sides
        resize_to_max: Always use max_side_len for the long side

    Returns:
        (new_height, new_width), both multiples of patch_size when
        max_side_len is, and long side never above max_side_len

    Why: The short side is rounded *up* (ceil) so no image content is squeezed
    below its scaled size, and floored at one patch so very thin images still
    produce a tile.
    """
    long_side = max(width, height)
    short_side = min(width, height)

    if resize_to_max:
        target_long = max_side_len
    else:
        target_long = min(max_side_len, align_up(long_side, patch_size))

    # ceil(short * scale / patch) with scale = target_long / long, in integers
    # so exact multiples never round up through float error
    patches = -(-short_side * target_long // (long_side * patch_size))
    target_short = max(patch_size, patches * patch_size)

    if width >= height:
        return target_short, target_long
    return target_long, target_short


class ImageTiler:
    """Resize and split images according to a TilingConfig.

    Example:
        >>> tiler = ImageTiler(TilingConfig(max_side_len=2048, patch_size=512))
        >>> grid = tiler.tile(Image.from_file("photo.jpg"))
        >>> grid.grid_h, grid.grid_w, grid.num_tiles
        (3, 4, 13)
    """

    def __init__(self, config: TilingConfig | None = None) -> None:
        self.config = config or TilingConfig()

    def target_size(self, image: Image) -> tuple[int, int]:
        """(height, width) the image will be resized to."""
        return compute_dynamic_resize(
            image.height,
            image.width,
            self.config.max_side_len,
            self.config.patch_size,
            self.config.resize_to_max,
        )

    def tile(self, image: Image) -> TileGrid:
        """Produce the ordered tile grid for an image.

        Raises:
            InvalidRegion: If a patch crop falls outside the resized image
        """
        patch = self.config.patch_size
        new_h, new_w = self.target_size(image)
        resized = bicubic_resize(image, new_w, new_h)

        grid_h = new_h // patch
        grid_w = new_w // patch
        logger.info(
            "Tiling %dx%d image -> %dx%d resize, %dx%d grid",
            image.width,
            image.height,
            new_w,
            new_h,
            grid_h,
            grid_w,
        )

        if grid_h == 1 and grid_w == 1:
            tiles = (Tile(to_chw_float(resized), TileRole.PATCH, row=0, col=0),)
            return TileGrid(grid_h=1, grid_w=1, tiles=tiles)

        global_view = bicubic_resize(resized, patch, patch)
        tile_list = [Tile(to_chw_float(global_view), TileRole.GLOBAL)]
        for row in range(grid_h):
            for col in range(grid_w):
                crop = crop_image(resized, col * patch, row * patch, patch, patch)
                tile_list.append(Tile(to_chw_float(crop), TileRole.PATCH, row=row, col=col))

        grid = TileGrid(grid_h=grid_h, grid_w=grid_w, tiles=tuple(tile_list))
        logger.debug(
            "Produced %d tiles (global view + %d patches)", grid.num_tiles, grid.num_patches
        )
        return grid


def tile(
    image: Image,
    max_side_len: int = 2048,
    patch_size: int = 512,
    resize_to_max: bool = False,
) -> TileGrid:
    """Functional form of ImageTiler.tile."""
    config = TilingConfig(
        max_side_len=max_side_len,
        patch_size=patch_size,
        resize_to_max=resize_to_max,
    )
    return ImageTiler(config).tile(image)


__all__ = [
    "ImageTiler",
    "Tile",
    "TileGrid",
    "TileRole",
    "align_up",
    "compute_dynamic_resize",
    "tile",
]
