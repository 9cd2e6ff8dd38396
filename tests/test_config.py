"""
Tests for configuration loading and the CLI entrypoint.
"""

import json
from pathlib import Path

import pytest
import yaml

from minima_brain import cli
from minima_brain.config import (
    DEFAULT_CONFIG,
    DEFAULT_SYSTEM_PROMPT,
    load_config,
    merge_config,
)


class TestConfig:
    def test_defaults_without_file(self, monkeypatch):
        monkeypatch.delenv("MINIMA_CONFIG", raising=False)

        config = load_config()

        assert config == DEFAULT_CONFIG
        assert config is not DEFAULT_CONFIG

    def test_yaml_overrides_merge(self, tmp_path):
        path = tmp_path / "minima.yaml"
        path.write_text("scheduler:\n  tau: 0.8\nimplementation: hf\n")

        config = load_config(str(path))

        assert config["scheduler"]["tau"] == 0.8
        assert config["scheduler"]["max_lookahead"] == 32
        assert config["implementation"] == "hf"

    def test_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text("seed: 7\n")
        monkeypatch.setenv("MINIMA_CONFIG", str(path))

        assert load_config()["seed"] == 7

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"))

        assert config == DEFAULT_CONFIG

    @pytest.mark.parametrize("content", ["scheduler: [unclosed", "- just\n- a list\n"])
    def test_bad_file_uses_defaults(self, tmp_path, content):
        path = tmp_path / "bad.yaml"
        path.write_text(content)

        assert load_config(str(path)) == DEFAULT_CONFIG

    def test_merge_does_not_mutate_base(self):
        base = {"a": {"b": 1, "c": 2}}

        merged = merge_config(base, {"a": {"b": 5}, "d": 3})

        assert merged == {"a": {"b": 5, "c": 2}, "d": 3}
        assert base == {"a": {"b": 1, "c": 2}}

    def test_shipped_example_config(self):
        """Test that configs/minima.yaml only sets keys the loader knows."""
        path = Path(__file__).resolve().parents[1] / "configs" / "minima.yaml"
        with open(path, "r") as f:
            raw = yaml.safe_load(f)

        config = load_config(str(path))

        for section, values in raw.items():
            assert section in DEFAULT_CONFIG
            if isinstance(values, dict):
                assert set(values) <= set(DEFAULT_CONFIG[section])
        assert config["system_prompt"] == DEFAULT_SYSTEM_PROMPT
        assert config["fake"]["sovereign_load_delay"] == 0.5
        assert config["scheduler"]["max_tokens"] is None


class TestCLI:
    def test_multi_turn_json_lines(self, tmp_path, monkeypatch, capsys):
        """Test that each --prompt produces one JSON line."""
        config_path = tmp_path / "cli.yaml"
        config_path.write_text(
            "prefix_cache:\n"
            f"  path: {tmp_path / 'prompt.cache'}\n"
            "fake:\n"
            "  reply: All done.\n"
            "  accuracy: 1.0\n"
        )
        monkeypatch.delenv("MINIMA_CONFIG", raising=False)

        cli.main(
            [
                "--config",
                str(config_path),
                "--prompt",
                "first",
                "--prompt",
                "second",
                "--seed",
                "3",
            ]
        )

        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 2
        turns = [json.loads(line) for line in lines]
        assert all(turn["text"] == "All done." for turn in turns)
        assert turns[0]["tier"] == "scout"
        assert turns[1]["prefix_cache_hit"] is True

    def test_overrides(self):
        args = cli.parse_args(
            ["--prompt", "x", "--impl", "hf", "--max-chars", "10", "--seed", "9"]
        )
        config = merge_config(DEFAULT_CONFIG, {})

        cli.apply_overrides(config, args)

        assert config["implementation"] == "hf"
        assert config["scheduler"]["max_output_chars"] == 10
        assert config["seed"] == 9

    def test_error_exits_nonzero(self, tmp_path, monkeypatch):
        config_path = tmp_path / "cli.yaml"
        config_path.write_text("context:\n  window_size: 9000\n")
        monkeypatch.delenv("MINIMA_CONFIG", raising=False)

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--config", str(config_path), "--prompt", "hi"])

        assert exc_info.value.code == 1
