"""
mk logging.

Log lines go to stderr (or any text stream) as a tag plus compact JSON:

    [DEBUG engine] {"event":"accept","conn":3}

The level threshold comes from an explicit LogConfig handed to the Engine;
nothing is read from the environment.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from typing import Any, TextIO

LEVELS = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "error": 40,
}


@dataclass
class LogConfig:
    """Level threshold and destination for engine logs."""
    level: str = "warning"
    stream: TextIO | None = None

    def __post_init__(self):
        self.level = self.level.lower()
        if self.level not in LEVELS:
            raise ValueError(f"unknown log level: {self.level}")

    def enabled(self, level: str) -> bool:
        return LEVELS[level] >= LEVELS[self.level]


class Log:
    """Tagged logger bound to a LogConfig."""

    def __init__(self, config: LogConfig | None = None, tag: str = "mk"):
        self.config = config or LogConfig()
        self.tag = tag

    def child(self, tag: str) -> Log:
        """Same config, different tag."""
        return Log(self.config, tag)

    def debug(self, event: str, **fields: Any):
        self._emit("debug", event, fields)

    def info(self, event: str, **fields: Any):
        self._emit("info", event, fields)

    def warning(self, event: str, **fields: Any):
        self._emit("warning", event, fields)

    def error(self, event: str, **fields: Any):
        self._emit("error", event, fields)

    def _emit(self, level: str, event: str, fields: dict):
        if not self.config.enabled(level):
            return
        stream = self.config.stream or sys.stderr
        compact = json.dumps({"event": event, **fields}, separators=(",", ":"), default=str)
        print(f"[{level.upper()} {self.tag}] {compact}", file=stream, flush=True)
