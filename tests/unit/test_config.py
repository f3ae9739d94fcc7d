"""
Tests for run configuration loading.
"""

import pytest

from proviso.engine.config import CONFIG_ENV, RunConfig, load_config
from proviso.engine.errors import ParseError


class TestLoadConfig:

    def test_defaults_without_path(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV, raising=False)
        assert load_config() == RunConfig()

    def test_reads_top_level_keys(self, tmp_path):
        path = tmp_path / "proviso.yml"
        path.write_text("strategy: serial\nprobe_retries: 5\nprobe_timeout: 3\n")

        config = load_config(path)

        assert config.strategy == "serial"
        assert config.probe_retries == 5
        assert config.probe_timeout == 3.0
        assert config.probe_delay == 2.0

    def test_reads_defaults_section(self, tmp_path):
        path = tmp_path / "proviso.yml"
        path.write_text("defaults:\n  json_output: true\n")
        assert load_config(path).json_output is True

    def test_env_variable(self, tmp_path, monkeypatch):
        path = tmp_path / "proviso.yml"
        path.write_text("verbosity: 2\n")
        monkeypatch.setenv(CONFIG_ENV, str(path))
        assert load_config().verbosity == 2

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "proviso.yml"
        path.write_text("")
        assert load_config(path) == RunConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ParseError, match="Config file not found"):
            load_config(tmp_path / "nope.yml")

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "proviso.yml"
        path.write_text("forks: 10\n")
        with pytest.raises(ParseError, match="unknown config keys: forks"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "proviso.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ParseError):
            load_config(path)

    def test_bad_value(self, tmp_path):
        path = tmp_path / "proviso.yml"
        path.write_text("probe_retries: many\n")
        with pytest.raises(ParseError, match="invalid value for probe_retries"):
            load_config(path)

    def test_yaml_error(self, tmp_path):
        path = tmp_path / "proviso.yml"
        path.write_text("strategy: [serial\n")
        with pytest.raises(ParseError, match="YAML syntax error"):
            load_config(path)

    def test_unknown_strategy_rejected(self, tmp_path):
        path = tmp_path / "proviso.yml"
        path.write_text("strategy: bogus\n")
        with pytest.raises(ParseError, match="strategy must be one of parallel, serial"):
            load_config(path)

    @pytest.mark.parametrize("content", [
        "probe_retries: 0\n",
        "probe_timeout: 0\n",
        "probe_delay: -1\n",
    ])
    def test_probe_bounds_rejected(self, tmp_path, content):
        path = tmp_path / "proviso.yml"
        path.write_text(content)
        with pytest.raises(ParseError):
            load_config(path)

    @pytest.mark.parametrize("word, expected", [
        ('"false"', False),
        ('"no"', False),
        ("'off'", False),
        ('"yes"', True),
        ("true", True),
    ])
    def test_boolean_words(self, tmp_path, word, expected):
        path = tmp_path / "proviso.yml"
        path.write_text(f"json_output: {word}\n")
        assert load_config(path).json_output is expected

    def test_non_boolean_rejected(self, tmp_path):
        path = tmp_path / "proviso.yml"
        path.write_text("json_output: maybe\n")
        with pytest.raises(ParseError, match="invalid value for json_output"):
            load_config(path)


class TestValidate:

    def test_defaults_are_valid(self):
        assert RunConfig().validate() == RunConfig()

    def test_bad_strategy(self):
        with pytest.raises(ParseError):
            RunConfig(strategy="bogus").validate()


class TestMerged:

    def test_none_overrides_are_ignored(self):
        config = RunConfig(strategy="serial").merged(strategy=None, json_output=True)
        assert config.strategy == "serial"
        assert config.json_output is True

    def test_original_is_untouched(self):
        config = RunConfig()
        config.merged(verbosity=3)
        assert config.verbosity == 0
