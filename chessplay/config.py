"""Settings for chess-play.

Defaults live in the dataclasses below. Settings.load() layers a TOML
file and then CHESSPLAY_* environment variables on top of them. Nothing
here is a global: callers build a Settings and pass it to the bridge,
coordinator or server that needs it.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

from loguru import logger

from chessplay.models import TimerConfig

DEFAULT_CONFIG_FILE = "chessplay.toml"


@dataclass
class EngineSettings:
    path: str | None = None  # None means auto-detect Stockfish
    startup_timeout_ms: int = 10000
    grace_ms: int = 1000
    evaluation_depth: int = 12
    evaluation_time_budget_ms: int = 1000
    analysis_depth: int = 22
    hint_time_budget_ms: int = 1000


@dataclass
class CoordinatorSettings:
    # Random delay before the automated side moves
    min_delay_ms: int = 300
    max_delay_ms: int = 1000


@dataclass
class TimerDefaults:
    initial_time_ms: int = 10 * 60 * 1000
    increment_ms: int = 0

    def resolve(self, initial_time_ms: int | None = None, increment_ms: int | None = None) -> TimerConfig:
        """Build a clock setup, taking any value not given from these defaults."""
        return TimerConfig(
            self.initial_time_ms if initial_time_ms is None else initial_time_ms,
            self.increment_ms if increment_ms is None else increment_ms,
        )


@dataclass
class Settings:
    engine: EngineSettings = field(default_factory=EngineSettings)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    timer: TimerDefaults = field(default_factory=TimerDefaults)
    log_level: str = "INFO"
    log_file: str | None = None
    protocol_log: str | None = None

    @staticmethod
    def load(path: str | Path | None = None) -> Settings:
        """Build settings from defaults, a TOML file and the environment.

        Args:
            path: TOML file to read. Defaults to $CHESSPLAY_CONFIG, then
                chessplay.toml in the working directory. A missing file
                leaves the defaults in place.

        Returns:
            Populated Settings.
        """
        cfg = Settings()
        config_path = Path(path or os.environ.get("CHESSPLAY_CONFIG", DEFAULT_CONFIG_FILE))
        if config_path.is_file():
            with open(config_path, "rb") as f:
                raw = tomllib.load(f)
            cfg._merge(raw)
            logger.debug(f"Loaded settings from {config_path}")
        cfg._apply_env(os.environ)
        return cfg

    def _merge(self, raw: dict) -> None:
        for section in ("engine", "coordinator", "timer"):
            if isinstance(raw.get(section), dict):
                _merge_section(getattr(self, section), raw[section])
        if "log_level" in raw:
            self.log_level = str(raw["log_level"])
        if "log_file" in raw:
            self.log_file = str(raw["log_file"])
        if "protocol_log" in raw:
            self.protocol_log = str(raw["protocol_log"])

    def _apply_env(self, env) -> None:
        if env.get("CHESSPLAY_STOCKFISH"):
            self.engine.path = env["CHESSPLAY_STOCKFISH"]
        if env.get("CHESSPLAY_LOG_LEVEL"):
            self.log_level = env["CHESSPLAY_LOG_LEVEL"].upper()
        if env.get("CHESSPLAY_PROTOCOL_LOG"):
            self.protocol_log = env["CHESSPLAY_PROTOCOL_LOG"]
        grace = env.get("CHESSPLAY_GRACE_MS")
        if grace:
            try:
                self.engine.grace_ms = int(grace)
            except ValueError:
                logger.warning(f"Ignoring non-numeric CHESSPLAY_GRACE_MS={grace!r}")


def _merge_section(target, values: dict) -> None:
    """Copy known keys onto target, converted to the type of the current value."""
    current = {f.name: getattr(target, f.name) for f in fields(target)}
    for key, value in values.items():
        if key not in current:
            logger.debug(f"Ignoring unknown setting {key!r}")
            continue
        # Optional fields (engine path) default to None and hold strings.
        kind = str if current[key] is None else type(current[key])
        try:
            if isinstance(value, (dict, list)) or (isinstance(value, bool) and kind is not bool):
                raise TypeError(type(value).__name__)
            converted = kind(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring setting {key}={value!r}: expected {kind.__name__}")
            continue
        setattr(target, key, converted)
