"""Tests for configuration loading, overrides and validation."""

import json
from pathlib import Path

import pytest

from wordclip.config import (
    ClipTiming,
    WordclipConfig,
    apply_cli_overrides,
    config_summary,
    example_config,
    keyword_rules,
    load_config,
    parse_clip_spec,
    save_config,
    validate_config,
)
from wordclip.errors import ConfigError


@pytest.fixture
def valid_config(tmp_path):
    video = tmp_path / "talk.mp4"
    video.write_bytes(b"video")
    return WordclipConfig(input_file=video, clips={"magic": ClipTiming()})


class TestDefaults:
    """Tests for default settings."""

    def test_defaults(self):
        """Test the defaults a bare config carries."""
        config = WordclipConfig()

        assert config.whisper.model == "base"
        assert config.whisper.language == "en"
        assert config.tracks.audio_tracks == [1]
        assert config.defaults.lead_seconds == 30.0
        assert config.defaults.trail_seconds == 30.0
        assert config.processing.merge_gap_seconds == 0.0
        assert config.cache.cleanup is True
        assert 1 <= config.processing.max_parallel <= 8

    def test_cache_directory_default(self, tmp_path, monkeypatch):
        """Test the cache directory follows the environment."""
        monkeypatch.setenv("WORDCLIP_CACHE_DIR", str(tmp_path))

        assert WordclipConfig().cache.resolved_directory() == tmp_path


class TestLoadSave:
    """Tests for load_config and save_config."""

    def test_json_round_trip(self, tmp_path):
        """Test a saved config loads back unchanged."""
        path = tmp_path / "wordclip.json"
        config = example_config()

        save_config(config, path)

        assert load_config(path) == config

    def test_save_omits_input_file(self, tmp_path, valid_config):
        """Test the run-specific input is not saved."""
        path = save_config(valid_config, tmp_path / "wordclip.json")

        assert "input_file" not in json.loads(path.read_text())

    def test_load_toml(self, tmp_path):
        """Test TOML config files are read."""
        path = tmp_path / "wordclip.toml"
        path.write_text(
            '[whisper]\nmodel = "small.en"\n\n'
            "[tracks]\naudio_tracks = [1, 2]\n\n"
            "[clips.magic]\nlead_seconds = 5.0\n\n"
            "[clips.word]\n"
        )

        config = load_config(path)

        assert config.whisper.model == "small.en"
        assert config.tracks.audio_tracks == [1, 2]
        assert config.clips["magic"].lead_seconds == 5.0
        assert config.clips["word"].lead_seconds is None

    def test_missing_file(self, tmp_path):
        """Test a missing file raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.json")

    def test_malformed_file(self, tmp_path):
        """Test unparseable content raises ConfigError."""
        path = tmp_path / "bad.json"
        path.write_text("{")

        with pytest.raises(ConfigError, match="Failed to parse"):
            load_config(path)

    def test_invalid_values(self, tmp_path):
        """Test schema violations raise ConfigError."""
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"clips": {"magic": {"lead_seconds": -1}}}))

        with pytest.raises(ConfigError, match="Invalid config"):
            load_config(path)

    def test_not_an_object(self, tmp_path):
        """Test a top-level list is rejected."""
        path = tmp_path / "list.json"
        path.write_text("[]")

        with pytest.raises(ConfigError):
            load_config(path)


class TestParseClipSpec:
    """Tests for parse_clip_spec."""

    def test_keyword_only(self):
        """Test a bare keyword uses default padding."""
        assert parse_clip_spec("magic") == ("magic", ClipTiming())

    def test_lead_and_trail(self):
        """Test both paddings are parsed."""
        assert parse_clip_spec("magic=10,20") == ("magic", ClipTiming(lead_seconds=10, trail_seconds=20))

    def test_lead_only(self):
        """Test a missing trail stays unset."""
        assert parse_clip_spec("magic=10") == ("magic", ClipTiming(lead_seconds=10))

    def test_trail_only(self):
        """Test a missing lead stays unset."""
        assert parse_clip_spec("magic=,20") == ("magic", ClipTiming(trail_seconds=20))

    def test_phrase(self):
        """Test multi-word keywords are kept."""
        assert parse_clip_spec(" magic word =1,2")[0] == "magic word"

    @pytest.mark.parametrize("spec", ["=1,2", "magic=abc", "magic=-1", "magic=1,x"])
    def test_invalid(self, spec):
        """Test malformed options raise ConfigError."""
        with pytest.raises(ConfigError):
            parse_clip_spec(spec)


class TestApplyCliOverrides:
    """Tests for apply_cli_overrides."""

    def test_overrides(self, tmp_path):
        """Test given values replace configured ones."""
        config = example_config()

        updated = apply_cli_overrides(
            config,
            input_file=tmp_path / "talk.mp4",
            output_dir=tmp_path / "clips",
            model="tiny",
            tracks=[2],
            lead_seconds=3,
            merge_gap_seconds=1.5,
            max_parallel=4,
            cache_dir=tmp_path / "cache",
            no_cleanup=True,
        )

        assert updated.input_file == tmp_path / "talk.mp4"
        assert updated.output.directory == tmp_path / "clips"
        assert updated.whisper.model == "tiny"
        assert updated.tracks.audio_tracks == [2]
        assert updated.defaults.lead_seconds == 3
        assert updated.defaults.trail_seconds == 30
        assert updated.processing.merge_gap_seconds == 1.5
        assert updated.processing.max_parallel == 4
        assert updated.cache.directory == tmp_path / "cache"
        assert updated.cache.cleanup is False
        assert set(updated.clips) == {"magic", "word"}

    def test_cli_clips_replace_table(self):
        """Test keywords from the command line replace the configured set."""
        updated = apply_cli_overrides(example_config(), clips=["hello=1,2"])

        assert updated.clips == {"hello": ClipTiming(lead_seconds=1, trail_seconds=2)}

    def test_original_untouched(self):
        """Test the input config is not modified."""
        config = example_config()
        apply_cli_overrides(config, model="tiny", clips=["x"])

        assert config.whisper.model == "base"
        assert "x" not in config.clips


class TestValidateConfig:
    """Tests for validate_config."""

    def test_valid(self, valid_config):
        """Test a complete config passes."""
        validate_config(valid_config)

    def test_missing_input(self, valid_config, tmp_path):
        """Test a nonexistent input fails."""
        valid_config.input_file = tmp_path / "missing.mp4"

        with pytest.raises(ConfigError, match="does not exist"):
            validate_config(valid_config)

    def test_input_not_required(self):
        """Test the input check can be skipped."""
        validate_config(example_config(), require_input=False)

    def test_unknown_model(self, valid_config):
        """Test an unknown model name fails."""
        valid_config.whisper.model = "enormous"

        with pytest.raises(ConfigError, match="Invalid model name"):
            validate_config(valid_config)

    @pytest.mark.parametrize("tracks", [[], [0], [1, 1]])
    def test_bad_tracks(self, valid_config, tracks):
        """Test empty, zero and duplicate tracks fail."""
        valid_config.tracks.audio_tracks = tracks

        with pytest.raises(ConfigError):
            validate_config(valid_config)

    def test_no_keywords(self, valid_config):
        """Test an empty keyword table fails."""
        valid_config.clips = {}

        with pytest.raises(ConfigError, match="No keywords"):
            validate_config(valid_config)

    def test_blank_keyword(self, valid_config):
        """Test a whitespace keyword fails."""
        valid_config.clips = {"  ": ClipTiming()}

        with pytest.raises(ConfigError, match="blank"):
            validate_config(valid_config)

    def test_case_duplicate_keywords(self, valid_config):
        """Test keywords differing only by case fail."""
        valid_config.clips = {"Magic": ClipTiming(), "magic": ClipTiming()}

        with pytest.raises(ConfigError, match="same ignoring case"):
            validate_config(valid_config)

    def test_negative_gap(self, valid_config):
        """Test a negative merge gap fails."""
        valid_config.processing.merge_gap_seconds = -1

        with pytest.raises(ConfigError, match="Merge gap"):
            validate_config(valid_config)

    def test_zero_parallelism(self, valid_config):
        """Test parallelism below one fails."""
        valid_config.processing.max_parallel = 0

        with pytest.raises(ConfigError, match="Parallelism"):
            validate_config(valid_config)


class TestKeywordRules:
    """Tests for keyword_rules and config_summary."""

    def test_defaults_fill_unset_padding(self):
        """Test unset padding falls back to the defaults."""
        rules = {rule.keyword: rule for rule in keyword_rules(example_config())}

        assert (rules["magic"].lead_seconds, rules["magic"].trail_seconds) == (30, 30)
        assert (rules["word"].lead_seconds, rules["word"].trail_seconds) == (10, 20)

    def test_zero_padding_is_kept(self):
        """Test an explicit zero is not replaced by the default."""
        config = WordclipConfig(clips={"magic": ClipTiming(lead_seconds=0, trail_seconds=0)})

        rule = keyword_rules(config)[0]

        assert (rule.lead_seconds, rule.trail_seconds) == (0, 0)

    def test_summary(self, valid_config):
        """Test the run summary lists the key settings."""
        summary = config_summary(valid_config)

        assert summary["model"] == "base"
        assert summary["keywords"] == "magic"
        assert summary["tracks"] == "1"
        assert Path(summary["input"]).name == "talk.mp4"
