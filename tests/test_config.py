"""Tests for settings loading from TOML and the environment."""

from __future__ import annotations

import pytest

from chessplay.config import Settings, TimerDefaults
from chessplay.models import TimerConfig


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    for name in ("CHESSPLAY_CONFIG", "CHESSPLAY_STOCKFISH", "CHESSPLAY_LOG_LEVEL", "CHESSPLAY_GRACE_MS",
                 "CHESSPLAY_PROTOCOL_LOG"):
        monkeypatch.delenv(name, raising=False)
    # Keep a chessplay.toml in the real working directory out of the picture.
    monkeypatch.chdir(tmp_path)


class TestDefaults:

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = Settings.load(tmp_path / "absent.toml")
        assert settings.engine.path is None
        assert settings.engine.startup_timeout_ms == 10000
        assert settings.engine.grace_ms == 1000
        assert settings.engine.evaluation_depth == 12
        assert settings.engine.analysis_depth == 22
        assert settings.coordinator.min_delay_ms == 300
        assert settings.coordinator.max_delay_ms == 1000
        assert settings.timer.initial_time_ms == 600000
        assert settings.log_level == "INFO"

    def test_timer_defaults_fill_missing_values(self):
        timer = TimerDefaults(initial_time_ms=300000, increment_ms=3000)
        assert timer.resolve() == TimerConfig(300000, 3000)
        assert timer.resolve(increment_ms=0) == TimerConfig(300000, 0)
        assert timer.resolve(60000) == TimerConfig(60000, 3000)

    def test_instances_do_not_share_sections(self):
        a, b = Settings(), Settings()
        a.engine.grace_ms = 5
        assert b.engine.grace_ms == 1000


class TestTomlFile:

    def test_sections_merge(self, tmp_path):
        path = tmp_path / "chessplay.toml"
        path.write_text(
            'log_level = "DEBUG"\n'
            "[engine]\n"
            'path = "/opt/sf/stockfish"\n'
            "grace_ms = 250\n"
            "[coordinator]\n"
            "min_delay_ms = 0\n"
            "max_delay_ms = 50\n",
            encoding="utf-8",
        )
        settings = Settings.load(path)
        assert settings.log_level == "DEBUG"
        assert settings.engine.path == "/opt/sf/stockfish"
        assert settings.engine.grace_ms == 250
        assert settings.engine.startup_timeout_ms == 10000
        assert settings.coordinator.max_delay_ms == 50

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "chessplay.toml"
        path.write_text("[engine]\nthreads = 4\n[extras]\nfoo = 1\n", encoding="utf-8")
        settings = Settings.load(path)
        assert not hasattr(settings.engine, "threads")

    def test_wrong_types_keep_defaults(self, tmp_path):
        path = tmp_path / "chessplay.toml"
        path.write_text(
            "[engine]\n"
            'grace_ms = "abc"\n'
            "evaluation_depth = true\n"
            "path = [1, 2]\n"
            "[coordinator]\n"
            'max_delay_ms = "750"\n',
            encoding="utf-8",
        )
        settings = Settings.load(path)
        assert settings.engine.grace_ms == 1000
        assert settings.engine.evaluation_depth == 12
        assert settings.engine.path is None
        # Numeric strings are converted.
        assert settings.coordinator.max_delay_ms == 750

    def test_config_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.toml"
        path.write_text("[timer]\ninitial_time_ms = 300000\nincrement_ms = 2000\n", encoding="utf-8")
        monkeypatch.setenv("CHESSPLAY_CONFIG", str(path))
        settings = Settings.load()
        assert settings.timer.initial_time_ms == 300000
        assert settings.timer.increment_ms == 2000

    def test_working_directory_file(self, tmp_path):
        (tmp_path / "chessplay.toml").write_text('log_file = "logs/chessplay.log"\n', encoding="utf-8")
        assert Settings.load().log_file == "logs/chessplay.log"


class TestEnvironment:

    def test_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "chessplay.toml"
        path.write_text('[engine]\npath = "/from/file"\n', encoding="utf-8")
        monkeypatch.setenv("CHESSPLAY_STOCKFISH", "/from/env")
        monkeypatch.setenv("CHESSPLAY_LOG_LEVEL", "trace")
        monkeypatch.setenv("CHESSPLAY_GRACE_MS", "42")
        monkeypatch.setenv("CHESSPLAY_PROTOCOL_LOG", "logs/uci.log")
        settings = Settings.load(path)
        assert settings.protocol_log == "logs/uci.log"
        assert settings.engine.path == "/from/env"
        assert settings.log_level == "TRACE"
        assert settings.engine.grace_ms == 42

    def test_invalid_grace_ignored(self, monkeypatch):
        monkeypatch.setenv("CHESSPLAY_GRACE_MS", "soon")
        assert Settings.load().engine.grace_ms == 1000
