"""Example usage of SnapVLM with a toy torch model.

Demonstrates the full path from image and prompt to generated text: tiling,
chat templating with image markers, vision encoding, embedding merge and the
greedy prefill/decode loop over a per-layer KV cache.

Why: A real checkpoint is hundreds of megabytes and needs a download. The toy
modules here have randomly initialised weights, so the generated text is
noise, but every tensor that crosses the ModelRunner boundary has the shape a
real exported SmolVLM graph would produce. If this runs end to end, the
engine, tokenizer and tiler agree with each other.

Usage:
    python examples/basic_usage.py

Expected output:
    - Tile grid for a 96x64 synthetic image (global view + 2x3 patches)
    - Prompt length and image-token count
    - A completed (or max-tokens) generation with streamed fragments
"""

import logging
import math

import torch
import torch.nn as nn

from snapvlm import GenerationStatus, Image, ModuleRunner, SnapVLMConfig, VisionLanguagePipeline
from snapvlm.tokenization.bpe import bytes_to_unicode
from snapvlm.tokenization.template import Tokenizer, marker_tokens
from snapvlm.tokenization.vocabulary import Vocabulary

HIDDEN = 32
HEADS = 2
HEAD_DIM = 8
LAYERS = 2


class ToyVisionEncoder(nn.Module):
    """(1, 3, P, P) -> (1, tokens_per_tile, HIDDEN) via a strided conv."""

    def __init__(self, patch_size: int, tokens_per_tile: int) -> None:
        super().__init__()
        side = math.isqrt(tokens_per_tile)
        self.proj = nn.Conv2d(3, HIDDEN, kernel_size=patch_size // side, stride=patch_size // side)

    def forward(self, pixel_values: torch.Tensor) -> torch.Tensor:
        return self.proj(pixel_values).flatten(2).transpose(1, 2)


class ToyDecoder(nn.Module):
    """Single-module decoder used for both prefill and decode.

    Takes (embeds, mask, positions, *past) and returns (hidden, k0, v0, ...),
    the flat layout of an exported graph.
    """

    def __init__(self) -> None:
        super().__init__()
        self.kv = nn.ModuleList(nn.Linear(HIDDEN, 2 * HEADS * HEAD_DIM) for _ in range(LAYERS))
        self.out = nn.ModuleList(nn.Linear(HEADS * HEAD_DIM, HIDDEN) for _ in range(LAYERS))

    def forward(self, embeds, mask, positions, *past):
        x = embeds
        length = x.shape[1]
        present = []
        for layer in range(LAYERS):
            kv = self.kv[layer](x).view(1, length, 2, HEADS, HEAD_DIM).permute(2, 0, 3, 1, 4)
            key, value = kv[0], kv[1]
            if past:
                key = torch.cat([past[2 * layer], key], dim=2)
                value = torch.cat([past[2 * layer + 1], value], dim=2)
            present.extend((key, value))

            query = kv[0]
            scores = query @ key.transpose(-1, -2) / math.sqrt(HEAD_DIM)
            if length > 1:
                causal = torch.ones(length, key.shape[2], dtype=torch.bool).tril(key.shape[2] - length)
                scores = scores.masked_fill(~causal, float("-inf"))
            context = scores.softmax(dim=-1) @ value
            x = x + self.out[layer](context.transpose(1, 2).reshape(1, length, HEADS * HEAD_DIM))
        return (x, *present)


def build_vocabulary(config: SnapVLMConfig) -> Vocabulary:
    """Byte-level vocabulary with a few merges plus every marker the config needs."""
    token_to_id = {char: i for i, char in enumerate(bytes_to_unicode().values())}
    merges = ["Ġ t", "h e", "Ġt he", "Ġ a", "i n", "Ġ i"]
    for merge in merges:
        token_to_id.setdefault(merge.replace(" ", ""), len(token_to_id))
    for special in (config.bos_token, config.eos_token, config.unk_token):
        token_to_id.setdefault(special, len(token_to_id))

    vocab = Vocabulary.from_dict({"vocab": token_to_id, "merges": merges})
    return vocab.with_added_tokens(marker_tokens(config))


def main() -> None:
    """Build a toy model, then run and stream one image-grounded generation."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    torch.manual_seed(0)

    print("=" * 60)
    print("SnapVLM - Example Usage")
    print("=" * 60)

    print("\n1. Creating configuration...")
    config = SnapVLMConfig(
        max_side_len=96,
        patch_size=32,
        tokens_per_tile=4,
        num_hidden_layers=LAYERS,
        hidden_size=HIDDEN,
        num_kv_heads=HEADS,
        max_new_tokens=12,
    )
    print(f"   Max grid side: {config.max_grid_side}")
    print(f"   Tokens per tile: {config.tokens_per_tile}")

    print("\n2. Building tokenizer...")
    tokenizer = Tokenizer(build_vocabulary(config), config)
    vocab_size = tokenizer.vocab.max_id + 1
    print(f"   Vocabulary size: {vocab_size}")

    print("\n3. Wrapping toy modules in a ModuleRunner...")
    decoder = ToyDecoder().eval()
    runner = ModuleRunner(
        vision_encoder=ToyVisionEncoder(config.patch_size, config.tokens_per_tile).eval(),
        embed_tokens=nn.Embedding(vocab_size, HIDDEN),
        prefill_module=decoder,
        decode_module=decoder,
        head=nn.Linear(HIDDEN, vocab_size),
        num_hidden_layers=LAYERS,
    )
    pipeline = VisionLanguagePipeline(config, tokenizer, runner)

    print("\n4. Preparing a 96x64 synthetic image...")
    gradient = torch.linspace(0, 255, 96).to(torch.uint8)
    pixels = gradient.view(1, 96, 1).expand(64, 96, 3).contiguous()
    image = Image(width=96, height=64, pixels=pixels)
    prepared = pipeline.prepare(image, "What is in the image?")
    print(f"   Grid: {prepared.grid.grid_h}x{prepared.grid.grid_w}, {prepared.grid.num_tiles} tiles")
    print(f"   Prompt tokens: {len(prepared.token_ids)} ({prepared.num_image_tokens} image)")

    print("\n5. Running generation...")
    result = pipeline.run(image, "What is in the image?")
    print(f"   Status: {result.status.value}")
    print(f"   Tokens: {len(result.token_ids)}")
    print(f"   Text: {result.text!r}")
    if result.status is GenerationStatus.ERROR:
        print(f"   Error: {result.error.kind.value} at {result.error.stage}: {result.error.message}")

    print("\n6. Streaming generation...")
    for event in pipeline.stream(image, "What is in the image?", max_new_tokens=6):
        if event.is_final:
            print(f"\n   Final status: {event.status.value}")
        elif event.text:
            print(f"   fragment: {event.text!r}")

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    main()
