"""Tests for the greedy prefill/decode engine.

Why: Generation is where every contract meets: marker/slot alignment, cache
threading, position ids, stopping policy and cancellation. The stub runner
records every call so these tests can assert not just the outcome but which
backend calls were (and were not) issued.
"""

import logging

import pytest
import torch

from snapvlm.core.errors import (
    ConfigError,
    ConfigMismatch,
    EngineBusyError,
    ErrorKind,
    ModelCallFailure,
)
from snapvlm.inference.generation import (
    CancellationToken,
    GenerationConfig,
    GenerationEngine,
    GenerationPhase,
    GenerationState,
    GenerationStatus,
    ProgressStage,
    greedy_select,
)
from snapvlm.tokenization.template import Tokenizer
from snapvlm.vision.image import Image
from snapvlm.vision.tiling import TileGrid, tile


def _grid(width: int = 8, height: int = 8) -> TileGrid:
    pixels = torch.full((height, width, 3), 128, dtype=torch.uint8)
    return tile(Image(width=width, height=height, pixels=pixels), max_side_len=16, patch_size=8)


@pytest.fixture
def gen_config(tokenizer: Tokenizer) -> GenerationConfig:
    return GenerationConfig(
        eos_token_id=tokenizer.eos_id, image_token_id=tokenizer.image_id, max_new_tokens=8
    )


@pytest.fixture
def word_id(vocab) -> int:
    """A non-eos token the stub can emit repeatedly."""
    return vocab.get_id("hello")


def _prompt(tokenizer: Tokenizer, engine: GenerationEngine, grid: TileGrid | None = None):
    grid = grid if grid is not None else _grid()
    return tokenizer.apply_template("hello world", grid), engine.encode_image(grid)


class TestGreedySelect:
    def test_argmax(self) -> None:
        assert greedy_select(torch.tensor([0.1, 2.0, -1.0])) == 1

    def test_ties_resolve_to_lowest_index(self) -> None:
        assert greedy_select(torch.tensor([1.0, 3.0, 3.0, 3.0])) == 1

    def test_uses_last_position(self) -> None:
        logits = torch.tensor([[[0.0, 9.0, 0.0], [0.0, 0.0, 9.0]]])

        assert greedy_select(logits) == 2


class TestTermination:
    """Tests for COMPLETED and MAX_TOKENS."""

    def test_eos_first_token_completes(self, tokenizer, gen_config, make_runner) -> None:
        """Verify an eos from the prefill ends generation after exactly 1 token."""
        runner = make_runner([tokenizer.eos_id])
        engine = GenerationEngine(runner, gen_config)
        ids, embeds = _prompt(tokenizer, engine)

        output = engine.generate(ids, embeds)

        assert output.status is GenerationStatus.COMPLETED
        assert output.token_ids == [tokenizer.eos_id]
        assert "decode_step" not in runner.calls

    def test_eos_mid_generation(self, tokenizer, gen_config, make_runner, word_id) -> None:
        runner = make_runner([word_id, word_id, tokenizer.eos_id])
        engine = GenerationEngine(runner, gen_config)
        ids, embeds = _prompt(tokenizer, engine)

        output = engine.generate(ids, embeds)

        assert output.status is GenerationStatus.COMPLETED
        assert output.token_ids == [word_id, word_id, tokenizer.eos_id]
        assert runner.calls.count("decode_step") == 2

    def test_max_tokens(self, tokenizer, gen_config, make_runner, word_id) -> None:
        """Verify a budget of N tokens issues exactly N - 1 decode calls."""
        runner = make_runner([word_id])
        engine = GenerationEngine(runner, gen_config)
        ids, embeds = _prompt(tokenizer, engine)

        output = engine.generate(ids, embeds, max_new_tokens=4)

        assert output.status is GenerationStatus.MAX_TOKENS
        assert output.num_tokens == 4
        assert runner.calls.count("decode_step") == 3

    def test_budget_of_one(self, tokenizer, gen_config, make_runner, word_id) -> None:
        runner = make_runner([word_id])
        engine = GenerationEngine(runner, gen_config)
        ids, embeds = _prompt(tokenizer, engine)

        output = engine.generate(ids, embeds, max_new_tokens=1)

        assert output.status is GenerationStatus.MAX_TOKENS
        assert output.token_ids == [word_id]
        assert "decode_step" not in runner.calls

    def test_invalid_budget(self, tokenizer, gen_config, make_runner) -> None:
        engine = GenerationEngine(make_runner([0]), gen_config)

        with pytest.raises(ConfigError):
            engine.generate([1, 2], max_new_tokens=0)


class TestRunnerInputs:
    """Tests for what the engine passes to the runner."""

    def test_prefill_mask_and_positions(self, tokenizer, gen_config, make_runner) -> None:
        runner = make_runner([tokenizer.eos_id])
        engine = GenerationEngine(runner, gen_config)
        ids, embeds = _prompt(tokenizer, engine)

        engine.generate(ids, embeds)

        inputs_embeds, mask, positions = runner.prefill_args
        assert inputs_embeds.shape == (1, len(ids), 8)
        assert torch.equal(mask, torch.ones(1, len(ids), dtype=torch.long))
        assert torch.equal(positions, torch.arange(len(ids)).unsqueeze(0))

    def test_image_rows_fill_marker_positions(self, tokenizer, gen_config, make_runner) -> None:
        """Verify markers get image embeddings and text keeps token embeddings."""
        runner = make_runner([tokenizer.eos_id])
        engine = GenerationEngine(runner, gen_config)
        ids, embeds = _prompt(tokenizer, engine)
        positions = set(tokenizer.image_token_positions(ids))

        engine.generate(ids, embeds)

        merged = runner.prefill_args[0][0]
        for i, token in enumerate(ids):
            expected = 128 / 255 if i in positions else float(token)
            assert merged[i, 0].item() == pytest.approx(expected)

    def test_global_and_location_markers_keep_text_embeddings(
        self, tokenizer, gen_config, make_runner
    ) -> None:
        runner = make_runner([tokenizer.eos_id])
        engine = GenerationEngine(runner, gen_config)
        ids, embeds = _prompt(tokenizer, engine, _grid(16, 8))

        engine.generate(ids, embeds)

        merged = runner.prefill_args[0][0]
        global_pos = ids.index(tokenizer.special.global_image)
        assert merged[global_pos, 0].item() == float(tokenizer.special.global_image)

    def test_decode_threads_cache_and_positions(
        self, tokenizer, gen_config, make_runner, word_id
    ) -> None:
        """Verify mask grows by one and the position id equals the cache length."""
        runner = make_runner([word_id])
        engine = GenerationEngine(runner, gen_config)
        ids, embeds = _prompt(tokenizer, engine)
        length = len(ids)

        engine.generate(ids, embeds, max_new_tokens=3)

        assert runner.decode_args == [
            (length + 1, length, length),
            (length + 2, length + 1, length + 1),
        ]

    def test_decode_embeds_previous_token(
        self, tokenizer, gen_config, make_runner, word_id
    ) -> None:
        runner = make_runner([word_id, tokenizer.eos_id])
        engine = GenerationEngine(runner, gen_config)

        engine.generate([1, 2, 3])

        # token_embed for the prompt, then for the single previous token
        assert runner.calls == [
            "token_embed", "prefill", "lm_head",
            "token_embed", "decode_step", "lm_head",
        ]  # fmt: skip


class TestConfigMismatch:
    def test_markers_for_two_tiles_one_tile_supplied(
        self, tokenizer, gen_config, make_runner
    ) -> None:
        """Verify generation never starts when markers exceed embedding rows."""
        runner = make_runner([tokenizer.eos_id])
        engine = GenerationEngine(runner, gen_config)
        one_tile = engine.encode_image(_grid())
        ids = (
            list(tokenizer.prefix_ids)
            + [tokenizer.image_id] * (2 * 2)
            + tokenizer.encode("hello")
            + list(tokenizer.suffix_ids)
        )
        runner.calls.clear()

        with pytest.raises(ConfigMismatch) as exc_info:
            engine.generate(ids, one_tile)

        assert exc_info.value.num_markers == 4
        assert exc_info.value.num_slots == 2
        assert exc_info.value.kind is ErrorKind.CONFIG_MISMATCH
        assert runner.calls == []

    def test_embeddings_without_markers(self, tokenizer, gen_config, make_runner) -> None:
        engine = GenerationEngine(make_runner([tokenizer.eos_id]), gen_config)
        embeds = engine.encode_image(_grid())

        with pytest.raises(ConfigMismatch):
            engine.generate(tokenizer.apply_template("hello"), embeds)

    def test_text_only_prompt(self, tokenizer, gen_config, make_runner) -> None:
        engine = GenerationEngine(make_runner([tokenizer.eos_id]), gen_config)

        output = engine.generate(tokenizer.apply_template("hello"))

        assert output.status is GenerationStatus.COMPLETED


class TestCancellation:
    @pytest.mark.parametrize("n", [2, 3, 5])
    def test_cancel_before_step_n(self, tokenizer, gen_config, make_runner, word_id, n) -> None:
        """Verify a signal raised before step N leaves N - 1 tokens and no more calls."""
        runner = make_runner([word_id])
        engine = GenerationEngine(runner, gen_config)
        ids, embeds = _prompt(tokenizer, engine)
        cancel = CancellationToken()
        calls_at_cancel = []

        def observer(event):
            if event.step == n - 1 and event.stage is not ProgressStage.FINISHED:
                cancel.cancel()
                calls_at_cancel.append(len(runner.calls))

        output = engine.generate(ids, embeds, cancel=cancel, observer=observer)

        assert output.status is GenerationStatus.CANCELLED
        assert output.num_tokens == n - 1
        assert len(runner.calls) == calls_at_cancel[0]

    def test_cancelled_before_start_still_prefills(
        self, tokenizer, gen_config, make_runner, word_id
    ) -> None:
        """Verify the check happens only at the top of decode iterations."""
        runner = make_runner([word_id])
        engine = GenerationEngine(runner, gen_config)
        cancel = CancellationToken()
        cancel.cancel()

        output = engine.generate([1, 2, 3], cancel=cancel)

        assert output.status is GenerationStatus.CANCELLED
        assert output.num_tokens == 1
        assert "decode_step" not in runner.calls

    def test_token_is_thread_safe_flag(self) -> None:
        cancel = CancellationToken()
        assert not cancel.is_cancelled

        cancel.cancel()

        assert cancel.is_cancelled


class TestFailures:
    def test_decode_failure_wrapped(self, tokenizer, gen_config, make_runner, word_id) -> None:
        """Verify a backend exception aborts with ModelCallFailure naming the stage."""
        runner = make_runner([word_id], fail_stage="decode_step", fail_call=1)
        engine = GenerationEngine(runner, gen_config)
        state = GenerationState()

        with pytest.raises(ModelCallFailure) as exc_info:
            for _ in engine.iter_generate([1, 2, 3], state=state):
                pass

        assert exc_info.value.stage == "decode_step"
        assert exc_info.value.step == 2
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert state.status is GenerationStatus.ERROR
        assert state.phase is GenerationPhase.TERMINATED
        assert state.generated == [word_id, word_id]
        assert runner.calls.count("decode_step") == 2

    def test_prefill_failure(self, tokenizer, gen_config, make_runner) -> None:
        engine = GenerationEngine(make_runner([0], fail_stage="prefill"), gen_config)

        with pytest.raises(ModelCallFailure, match="prefill failed"):
            engine.generate([1, 2, 3])

    def test_token_embed_failure(self, tokenizer, gen_config, make_runner) -> None:
        engine = GenerationEngine(make_runner([0], fail_stage="token_embed"), gen_config)

        with pytest.raises(ModelCallFailure) as exc_info:
            engine.generate([1, 2, 3])

        assert exc_info.value.stage == "token_embed"

    def test_wrong_layer_count(self, tokenizer, gen_config, make_runner) -> None:
        engine = GenerationEngine(make_runner([0], cache_layers=1), gen_config)

        with pytest.raises(ModelCallFailure, match="expected 2"):
            engine.generate([1, 2, 3])

    def test_strict_cache_detects_stalled_cache(
        self, tokenizer, gen_config, make_runner, word_id
    ) -> None:
        """Verify strict mode rejects a cache that stopped growing."""
        gen_config.strict_cache = True
        engine = GenerationEngine(make_runner([word_id], cache_growth=0), gen_config)

        with pytest.raises(ModelCallFailure, match="holds 3 positions but position id is 4"):
            engine.generate([1, 2, 3], max_new_tokens=4)

    def test_lenient_cache_by_default(self, tokenizer, gen_config, make_runner, word_id) -> None:
        engine = GenerationEngine(make_runner([word_id], cache_growth=0), gen_config)

        assert engine.generate([1, 2, 3], max_new_tokens=4).status is GenerationStatus.MAX_TOKENS

    def test_vision_failure(self, tokenizer, gen_config, make_runner) -> None:
        engine = GenerationEngine(make_runner([0], fail_stage="vision_encode"), gen_config)

        with pytest.raises(ModelCallFailure, match="vision_encode"):
            engine.encode_image(_grid())


class TestMalformedOutputs:
    """Backends returning the wrong structure fail as ModelCallFailure, status ERROR.

    Why: Exported graphs disagree on output layout. A backend that drops the
    batch dimension or forgets the cache must surface as a model-call failure
    naming the stage, never as a raw IndexError escaping the engine.
    """

    @pytest.mark.parametrize(
        ("stage", "mangle", "step"),
        [
            ("prefill", lambda out: (out[0][0], out[1]), None),
            ("prefill", lambda out: (out[0], None), None),
            ("decode_step", lambda out: out[0], 1),
            ("lm_head", lambda out: None, None),
        ],
        ids=["hidden-without-batch", "missing-cache", "hidden-only", "no-logits"],
    )
    def test_wrapped_with_stage(
        self, tokenizer, gen_config, make_runner, word_id, stage, mangle, step
    ) -> None:
        runner = make_runner([word_id], mangle={stage: mangle})
        engine = GenerationEngine(runner, gen_config)
        state = GenerationState()

        with pytest.raises(ModelCallFailure) as exc_info:
            for _ in engine.iter_generate([1, 2, 3], state=state):
                pass

        assert exc_info.value.stage == stage
        assert exc_info.value.step == step
        assert state.status is GenerationStatus.ERROR
        assert state.phase is GenerationPhase.TERMINATED

    def test_token_embed_without_batch(self, tokenizer, gen_config, make_runner) -> None:
        runner = make_runner([0], mangle={"token_embed": lambda out: out[0]})
        engine = GenerationEngine(runner, gen_config)

        with pytest.raises(ModelCallFailure, match="token_embed"):
            engine.generate([1, 2, 3])

    def test_vision_encode_non_tensor(self, tokenizer, gen_config, make_runner) -> None:
        runner = make_runner([0], mangle={"vision_encode": lambda out: out.tolist()})
        engine = GenerationEngine(runner, gen_config)

        with pytest.raises(ModelCallFailure, match="vision_encode"):
            engine.encode_image(_grid())

    def test_unexpected_exception_is_error_not_cancelled(
        self, tokenizer, gen_config, make_runner, word_id
    ) -> None:
        """Verify only an abandoned generator ends as CANCELLED."""

        class BrokenToken:
            @property
            def is_cancelled(self) -> bool:
                raise RuntimeError("token backend gone")

        engine = GenerationEngine(make_runner([word_id]), gen_config)
        state = GenerationState()

        with pytest.raises(RuntimeError, match="token backend gone"):
            for _ in engine.iter_generate([1, 2, 3], cancel=BrokenToken(), state=state):
                pass

        assert state.status is GenerationStatus.ERROR
        assert engine.generate([1, 2, 3], max_new_tokens=1).status is GenerationStatus.MAX_TOKENS


class TestProgress:
    def test_event_sequence(self, tokenizer, gen_config, make_runner, word_id) -> None:
        engine = GenerationEngine(make_runner([word_id, tokenizer.eos_id]), gen_config)
        events = []

        engine.generate([1, 2, 3], observer=events.append)

        assert [e.stage for e in events] == [
            ProgressStage.PREFILL_COMPLETE,
            ProgressStage.DECODE_STEP,
            ProgressStage.FINISHED,
        ]
        assert [e.step for e in events] == [1, 2, 2]
        assert events[-1].status is GenerationStatus.COMPLETED

    def test_observer_errors_ignored(self, tokenizer, gen_config, make_runner, caplog) -> None:
        """Verify a failing observer is logged and does not affect generation."""
        engine = GenerationEngine(make_runner([tokenizer.eos_id]), gen_config)

        def observer(event):
            raise ValueError("ui gone")

        with caplog.at_level(logging.WARNING, logger="snapvlm.inference.generation"):
            output = engine.generate([1, 2, 3], observer=observer)

        assert output.status is GenerationStatus.COMPLETED
        assert "Progress observer failed" in caplog.text

    def test_finish_log_reports_cache_size(self, tokenizer, gen_config, make_runner, caplog) -> None:
        runner = make_runner([tokenizer.eos_id])
        engine = GenerationEngine(runner, gen_config)
        # Prefill over 3 positions: key and value per layer, float32
        expected = runner.num_layers * 2 * 3 * runner.head_dim * 4

        with caplog.at_level(logging.INFO, logger="snapvlm.inference.generation"):
            engine.generate([1, 2, 3])

        assert f"after 1 tokens (cache {expected} bytes)" in caplog.text


class TestConcurrency:
    def test_engine_busy(self, tokenizer, gen_config, make_runner, word_id) -> None:
        """Verify a second generation on a running engine is rejected."""
        engine = GenerationEngine(make_runner([word_id]), gen_config)
        first = engine.iter_generate([1, 2, 3])
        next(first)

        with pytest.raises(EngineBusyError):
            engine.generate([1, 2, 3])

        first.close()
        assert engine.generate([1, 2, 3], max_new_tokens=2).num_tokens == 2

    def test_failed_layer_query_releases_engine(
        self, tokenizer, gen_config, make_runner, word_id
    ) -> None:
        """Verify a runner that cannot report its layer count does not wedge the engine."""
        engine = GenerationEngine(make_runner([word_id], layer_query_failures=1), gen_config)

        with pytest.raises(ModelCallFailure, match="num_hidden_layers"):
            engine.generate([1, 2, 3])

        assert engine.generate([1, 2, 3], max_new_tokens=2).num_tokens == 2

    def test_abandoned_iteration_is_cancelled(
        self, tokenizer, gen_config, make_runner, word_id
    ) -> None:
        engine = GenerationEngine(make_runner([word_id]), gen_config)
        state = GenerationState()
        tokens = engine.iter_generate([1, 2, 3], state=state)

        next(tokens)
        tokens.close()

        assert state.status is GenerationStatus.CANCELLED
        assert state.phase is GenerationPhase.TERMINATED

    def test_parallel_vision_encoding_keeps_tile_order(
        self, tokenizer, gen_config, make_runner
    ) -> None:
        """Verify thread-pool encoding publishes rows in tile order."""
        pixels = torch.zeros((16, 16, 3), dtype=torch.uint8)
        pixels[:8, 8:] = 60
        pixels[8:, :8] = 120
        pixels[8:, 8:] = 240
        grid = tile(Image(width=16, height=16, pixels=pixels), max_side_len=16, patch_size=8)
        gen_config.vision_workers = 4
        engine = GenerationEngine(make_runner([0]), gen_config)

        embeddings = engine.encode_image(grid)

        assert embeddings.shape == (grid.num_tiles * 2, 8)
        row_means = embeddings[::2, 0]
        expected = torch.stack([t.pixel_values.mean() for t in grid.tiles])
        assert torch.allclose(row_means, expected)
