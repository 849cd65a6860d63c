"""Tests for SnapVLMConfig and TilingConfig.

Why: Tiler, tokenizer and engine all read the same config. A bad value must
fail with ConfigError when the artifact is loaded, not later as a marker/slot
mismatch in the middle of a generation.
"""

import json

import pytest

from snapvlm.core.config import ChatTemplate, SnapVLMConfig, TilingConfig
from snapvlm.core.errors import ConfigError, ErrorKind


class TestSnapVLMConfigDefaults:
    """Tests for default values and derived properties."""

    def test_defaults(self) -> None:
        """Verify defaults match the SmolVLM export this engine targets."""
        config = SnapVLMConfig()

        assert config.max_side_len == 2048
        assert config.patch_size == 512
        assert config.resize_to_max is False
        assert config.tokens_per_tile == 64
        assert config.template is ChatTemplate.CHATML
        assert config.max_new_tokens == 256
        assert config.vision_workers == 1

    def test_max_grid_side(self) -> None:
        """Verify the largest grid side is ceil(max_side_len / patch_size).

        Why: The tokenizer checks location markers exist for every cell of
        this grid, so it must cover anything the tiler can produce.
        """
        assert SnapVLMConfig().max_grid_side == 4
        assert SnapVLMConfig(max_side_len=1152, patch_size=384).max_grid_side == 3

    def test_tiling_property(self) -> None:
        config = SnapVLMConfig(max_side_len=1024, patch_size=256, resize_to_max=True)

        assert config.tiling == TilingConfig(max_side_len=1024, patch_size=256, resize_to_max=True)

    def test_location_token_is_one_based(self) -> None:
        """Verify 0-based grid cells render 1-based marker strings."""
        config = SnapVLMConfig()

        assert config.location_token(0, 0) == "<row_1_col_1>"
        assert config.location_token(2, 3) == "<row_3_col_4>"


class TestSnapVLMConfigValidation:
    """Tests for __post_init__ validation."""

    @pytest.mark.parametrize(
        "field",
        ["patch_size", "tokens_per_tile", "num_hidden_layers", "max_new_tokens", "vision_workers"],
    )
    def test_rejects_non_positive(self, field: str) -> None:
        with pytest.raises(ConfigError, match=field):
            SnapVLMConfig(**{field: 0})

    def test_rejects_bool_for_int_field(self) -> None:
        """Verify True is not accepted as the integer 1."""
        with pytest.raises(ConfigError):
            SnapVLMConfig(tokens_per_tile=True)

    def test_rejects_patch_larger_than_max_side(self) -> None:
        with pytest.raises(ConfigError, match="must not exceed"):
            SnapVLMConfig(patch_size=1024, max_side_len=512)

    def test_rejects_max_side_not_multiple_of_patch(self) -> None:
        """Verify a cap that is not a whole number of tiles is rejected at load."""
        with pytest.raises(ConfigError, match="multiple of patch_size"):
            SnapVLMConfig(max_side_len=700, patch_size=512)

    def test_template_from_string(self) -> None:
        """Verify template names from JSON become enum values."""
        assert SnapVLMConfig(template="plain").template is ChatTemplate.PLAIN
        assert SnapVLMConfig(template="ChatML").template is ChatTemplate.CHATML

    def test_unknown_template(self) -> None:
        with pytest.raises(ConfigError, match="Unknown template"):
            SnapVLMConfig(template="llama")

    def test_location_format_requires_fields(self) -> None:
        with pytest.raises(ConfigError, match="location_token_format"):
            SnapVLMConfig(location_token_format="<cell_{index}>")

    def test_config_error_kind(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            SnapVLMConfig(patch_size=-1)
        assert exc_info.value.kind is ErrorKind.CONFIG


class TestTilingConfig:
    def test_rejects_zero_patch(self) -> None:
        with pytest.raises(ValueError):
            TilingConfig(patch_size=0)

    def test_rejects_max_side_below_patch(self) -> None:
        with pytest.raises(ValueError):
            TilingConfig(max_side_len=256, patch_size=512)

    def test_rejects_max_side_not_multiple_of_patch(self) -> None:
        with pytest.raises(ValueError, match="multiple of patch_size"):
            TilingConfig(max_side_len=700, patch_size=512)


class TestConfigLoading:
    """Tests for from_dict / from_json."""

    def test_nanovlm_aliases(self) -> None:
        """Verify nanoVLM config.json key names map onto fields.

        Why: Model directories ship the training config unchanged; requiring a
        hand-edited copy would be an easy way to get tokens_per_tile wrong.
        """
        config = SnapVLMConfig.from_dict(
            {
                "mp_image_token_length": 81,
                "max_img_size": 1536,
                "splitted_image_size": 384,
                "resize_to_max_side_len": True,
                "lm_n_blocks": 30,
                "lm_hidden_dim": 576,
                "lm_n_kv_heads": 3,
                "lm_vocab_size": 49218,
                "vlm_extra_tokens": {"image_token": "<|img|>", "global_image_token": "<|g|>"},
            }
        )

        assert config.tokens_per_tile == 81
        assert config.max_side_len == 1536
        assert config.patch_size == 384
        assert config.resize_to_max is True
        assert config.num_hidden_layers == 30
        assert config.hidden_size == 576
        assert config.num_kv_heads == 3
        assert config.vocab_size == 49218
        assert config.image_token == "<|img|>"
        assert config.global_image_token == "<|g|>"

    def test_unknown_keys_ignored(self) -> None:
        config = SnapVLMConfig.from_dict({"vit_model_type": "siglip", "patch_size": 256})
        assert config.patch_size == 256

    def test_non_dict_rejected(self) -> None:
        with pytest.raises(ConfigError, match="JSON object"):
            SnapVLMConfig.from_dict([1, 2, 3])  # type: ignore[arg-type]

    def test_from_json(self, tmp_path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"tokens_per_tile": 16, "template": "plain"}), encoding="utf-8")

        config = SnapVLMConfig.from_json(path)

        assert config.tokens_per_tile == 16
        assert config.template is ChatTemplate.PLAIN

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            SnapVLMConfig.from_json(tmp_path / "missing.json")

    def test_malformed_json(self, tmp_path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ConfigError, match="Failed to parse"):
            SnapVLMConfig.from_json(path)
