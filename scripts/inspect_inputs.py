#!/usr/bin/env python3
"""Show how an image and prompt are turned into vision tiles and prompt tokens.

USAGE:
    # Tile an image with a model directory's config and tokenizer
    python scripts/inspect_inputs.py --model-dir models/nanovlm --image cat.jpg \\
        --prompt "What is in this image?"

    # Tiling only, with explicit geometry
    python scripts/inspect_inputs.py --image cat.jpg --max-side 1536 --patch 512

    # Dump the templated token ids
    python scripts/inspect_inputs.py --model-dir models/nanovlm --image cat.jpg --show-ids

Why: Most generation failures on a new checkpoint are preprocessing
disagreements: a grid larger than the vocabulary's location markers, a
tokens_per_tile that does not match the vision encoder, or a template the
vocabulary cannot spell. This script surfaces all of them without loading
any model weights.
"""

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(__file__).replace("/scripts/inspect_inputs.py", "/src"))

from snapvlm.core.config import SnapVLMConfig
from snapvlm.core.errors import SnapVLMError
from snapvlm.inference.pipeline import CONFIG_FILENAME, TOKENIZER_FILENAME
from snapvlm.tokenization.template import Tokenizer
from snapvlm.vision.image import Image
from snapvlm.vision.tiling import ImageTiler, TileGrid, TileRole


def print_grid_summary(image: Image, tiler: ImageTiler, grid: TileGrid) -> None:
    """Print resize target, grid shape and per-tile statistics."""
    new_h, new_w = tiler.target_size(image)
    print("\n" + "=" * 60)
    print("TILING")
    print("=" * 60)
    print(f"  Source:        {image.width}x{image.height}")
    print(f"  Resized to:    {new_w}x{new_h}")
    print(f"  Grid:          {grid.grid_h} rows x {grid.grid_w} cols")
    print(f"  Tiles:         {grid.num_tiles} (global view: {'yes' if grid.has_global_view else 'no'})")
    print()
    print(f"  {'#':>3} {'Role':<7} {'Cell':<8} {'Mean':>7} {'Std':>7}")
    print("  " + "-" * 36)
    for index, t in enumerate(grid):
        cell = "-" if t.role is TileRole.GLOBAL else f"({t.row},{t.col})"
        mean = t.pixel_values.mean().item()
        std = t.pixel_values.std().item()
        print(f"  {index:>3} {t.role.name:<7} {cell:<8} {mean:>7.3f} {std:>7.3f}")


def print_token_summary(
    tokenizer: Tokenizer, grid: TileGrid | None, prompt: str, show_ids: bool
) -> None:
    """Print the templated prompt's composition."""
    ids = tokenizer.apply_template(prompt, grid)
    image_positions = tokenizer.image_token_positions(ids)
    text_ids = tokenizer.encode(prompt)

    print("\n" + "=" * 60)
    print("PROMPT")
    print("=" * 60)
    print(f"  Template:      {tokenizer.config.template.value}")
    print(f"  Total tokens:  {len(ids)}")
    print(f"  Image tokens:  {len(image_positions)}")
    print(f"  Text tokens:   {len(text_ids)}")
    print(f"  Framing:       {len(tokenizer.prefix_ids)} open + {len(tokenizer.suffix_ids)} close")
    if image_positions:
        print(f"  Image span:    positions {image_positions[0]}..{image_positions[-1]}")
    if show_ids:
        print(f"\n  Ids: {ids}")
    print(f"\n  Decoded: {tokenizer.decode(ids)!r}")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Inspect tiling and prompt templating for an image and prompt"
    )
    parser.add_argument("--image", type=Path, required=True, help="Image file to tile")
    parser.add_argument("--prompt", default="Describe this image.", help="User prompt")
    parser.add_argument(
        "--model-dir",
        type=Path,
        help=f"Directory containing {CONFIG_FILENAME} and {TOKENIZER_FILENAME}",
    )
    parser.add_argument("--max-side", type=int, help="Override max_side_len")
    parser.add_argument("--patch", type=int, help="Override patch_size")
    parser.add_argument(
        "--resize-to-max", action="store_true", help="Upscale the long side to max_side_len"
    )
    parser.add_argument("--show-ids", action="store_true", help="Print templated token ids")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.model_dir is not None:
            config = SnapVLMConfig.from_json(args.model_dir / CONFIG_FILENAME)
        else:
            config = SnapVLMConfig()
        overrides: dict[str, object] = {}
        if args.max_side is not None:
            overrides["max_side_len"] = args.max_side
        if args.patch is not None:
            overrides["patch_size"] = args.patch
        if args.resize_to_max:
            overrides["resize_to_max"] = True
        config = dataclasses.replace(config, **overrides)

        image = Image.from_file(args.image)
        tiler = ImageTiler(config.tiling)
        grid = tiler.tile(image)
        print_grid_summary(image, tiler, grid)

        if args.model_dir is not None:
            tokenizer = Tokenizer.from_file(args.model_dir / TOKENIZER_FILENAME, config)
            print_token_summary(tokenizer, grid, args.prompt, args.show_ids)
        else:
            print("\n(no --model-dir given, skipping prompt templating)")
    except SnapVLMError as e:
        print(f"\nError ({e.kind.value}): {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
