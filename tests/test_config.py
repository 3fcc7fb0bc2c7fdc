"""
tests/test_config.py — YAML Configuration Loader
=================================================
"""

from __future__ import annotations

import pytest

from tally.config import TallyConfig, load_config


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg == TallyConfig()
        assert cfg.page_size == 10
        assert cfg.raw_window == 20
        assert cfg.default_group_id == "hotdog-contest"

    def test_overrides(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("page_size: 5\nraw_window: 8\ndefault_reaction: '🔥'\n", encoding="utf-8")
        cfg = load_config(path)
        assert (cfg.page_size, cfg.raw_window, cfg.default_reaction) == (5, 8, "🔥")
        assert cfg.flag_threshold == 3

    def test_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("flag_threshold: 7\n", encoding="utf-8")
        monkeypatch.setenv("TALLY_CONFIG", str(path))
        assert load_config().flag_threshold == 7

    def test_window_smaller_than_page_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("page_size: 10\nraw_window: 5\n", encoding="utf-8")
        with pytest.raises(ValueError, match="raw_window"):
            load_config(path)

    def test_non_positive_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("page_size: 0\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(path)

    def test_live_feed_limit(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("max_live_feeds: 3\n", encoding="utf-8")
        assert load_config(path).max_live_feeds == 3
        path.write_text("max_live_feeds: 0\n", encoding="utf-8")
        with pytest.raises(ValueError, match="max_live_feeds"):
            load_config(path)
