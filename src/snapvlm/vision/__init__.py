"""Image ingestion and tiling for the vision encoder.

Provides the immutable RGB Image container, the bicubic resize kernel, and the
dynamic-resize tiler that turns one image into a global view plus a grid of
patch_size x patch_size tiles.

Why: The tile order produced here defines the order in which image embeddings
fill image-marker positions in the prompt, so tiling and templating must agree
exactly. Both read their grid from the same TileGrid object.
"""

from snapvlm.vision.image import Image, PixelLayout
from snapvlm.vision.resize import bicubic_resize, crop_image, to_chw_float
from snapvlm.vision.tiling import (
    ImageTiler,
    Tile,
    TileGrid,
    TileRole,
    align_up,
    compute_dynamic_resize,
    tile,
)

__all__ = [
    # Images
    "Image",
    "PixelLayout",
    # Resampling
    "bicubic_resize",
    "crop_image",
    "to_chw_float",
    # Tiling
    "ImageTiler",
    "Tile",
    "TileGrid",
    "TileRole",
    "align_up",
    "compute_dynamic_resize",
    "tile",
]
