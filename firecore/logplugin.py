"""Plugins that receive the log lines of a supervised node process."""

from __future__ import annotations

import logging
import os
import re
import sys
import threading
from collections import deque
from typing import Callable, TextIO

_INSTRUMENTATION_PREFIX = re.compile(r"^(DMLOG|FIRE) ")

# Logging level that makes ToLoggerLogPlugin drop a line entirely.
NO_DISPLAY = logging.CRITICAL + 10


def _debug_line_length_from_env(default: int = 4096) -> int:
    raw = os.environ.get("DEBUG_LINE_LENGTH", "")
    if not raw:
        return default
    try:
        return int(raw, 10)
    except ValueError:
        return default


DEBUG_LINE_LENGTH = _debug_line_length_from_env()

ErrorCallback = Callable[[BaseException | None], None]


def is_instrumentation_line(line: str) -> bool:
    """Whether the line carries reader instrumentation (``FIRE`` or ``DMLOG`` prefix)."""
    return _INSTRUMENTATION_PREFIX.match(line) is not None


class Shutter:
    """One-shot shutdown signal with callbacks run while terminating and once terminated."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._terminating = threading.Event()
        self._terminated = threading.Event()
        self._terminating_callbacks: list[ErrorCallback] = []
        self._terminated_callbacks: list[ErrorCallback] = []
        self.error: BaseException | None = None

    def shutdown(self, error: BaseException | None = None) -> None:
        with self._lock:
            if self._terminating.is_set():
                return
            self.error = error
            self._terminating.set()
            terminating = list(self._terminating_callbacks)

        for callback in terminating:
            callback(error)

        with self._lock:
            self._terminated.set()
            terminated = list(self._terminated_callbacks)

        for callback in terminated:
            callback(error)

    def on_terminating(self, callback: ErrorCallback) -> None:
        with self._lock:
            if not self._terminating.is_set():
                self._terminating_callbacks.append(callback)
                return
        callback(self.error)

    def on_terminated(self, callback: ErrorCallback) -> None:
        with self._lock:
            if not self._terminated.is_set():
                self._terminated_callbacks.append(callback)
                return
        callback(self.error)

    def is_terminating(self) -> bool:
        return self._terminating.is_set()

    def is_terminated(self) -> bool:
        return self._terminated.is_set()

    def wait_terminated(self, timeout: float | None = None) -> bool:
        """Block until terminated; return False if the timeout expired first."""
        return self._terminated.wait(timeout)


class LogPlugin:
    """Receives every line emitted by the supervised process."""

    name = "LogPlugin"

    def launch(self) -> None:
        """Called when the supervised process starts."""

    def log_line(self, line: str) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        """Called when the supervised process has ended."""

    def shutdown(self, error: BaseException | None = None) -> None:
        """Plugins without a lifecycle ignore shutdown requests."""

    def is_terminating(self) -> bool:
        return False


class LineRingBuffer:
    """Keeps the last ``max_count`` lines appended."""

    def __init__(self, max_count: int) -> None:
        self.max_count = max_count
        self._lines: deque[str] = deque(maxlen=max(max_count, 0))

    def append(self, line: str) -> None:
        if self.max_count == 0:
            return
        self._lines.append(line)

    def lines(self) -> list[str]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


class FunctionLogPlugin(LogPlugin):
    """Adapts a plain callable into a log plugin."""

    name = "log plug func"

    def __init__(self, func: Callable[[str], None]) -> None:
        self._func = func

    def log_line(self, line: str) -> None:
        self._func(line)


class KeepLastLinesLogPlugin(Shutter, LogPlugin):
    """Keeps the last N lines, optionally including instrumentation lines."""

    name = "KeepLastLinesLogPlugin"

    def __init__(self, line_count: int, include_deep_mind_lines: bool = False) -> None:
        super().__init__()
        self._last_lines = LineRingBuffer(line_count)
        self.include_deep_mind_lines = include_deep_mind_lines

    def debug_deep_mind(self, enabled: bool) -> None:
        self.include_deep_mind_lines = enabled

    def log_line(self, line: str) -> None:
        if is_instrumentation_line(line) and not self.include_deep_mind_lines:
            return
        self._last_lines.append(line)

    def last_lines(self) -> list[str]:
        return self._last_lines.lines()


class ToConsoleLogPlugin(Shutter, LogPlugin):
    """Prints non-instrumentation lines (or all, when debugging) to standard output."""

    name = "ToConsoleLogPlugin"

    def __init__(
        self,
        debug_deep_mind: bool = False,
        *,
        skip_blank_lines: bool = False,
        max_line_length: int | None = None,
        stream: TextIO | None = None,
    ) -> None:
        super().__init__()
        self.debug_deep_mind_enabled = debug_deep_mind
        self.skip_blank_lines = skip_blank_lines
        self.max_line_length = DEBUG_LINE_LENGTH if max_line_length is None else max_line_length
        self._stream = stream

    def debug_deep_mind(self, enabled: bool) -> None:
        self.debug_deep_mind_enabled = enabled

    def log_line(self, line: str) -> None:
        if line == "" and self.skip_blank_lines:
            return
        if not self.debug_deep_mind_enabled and is_instrumentation_line(line):
            return

        stream = self._stream if self._stream is not None else sys.stdout
        encoded = line.encode("utf-8")
        if len(encoded) > self.max_line_length:
            head = encoded[: self.max_line_length].decode("utf-8", errors="replace")
            stream.write(f"{head} ... bytes: {len(encoded) - self.max_line_length}\n")
        else:
            stream.write(line + "\n")


class ToLoggerLogPlugin(Shutter, LogPlugin):
    """Forwards non-instrumentation lines to a :class:`logging.Logger`.

    ``level_extractor`` picks the level of each line (``NO_DISPLAY`` drops it);
    ``line_transformer`` rewrites the line once its level is known (an empty
    result drops it).
    """

    name = "ToLoggerLogPlugin"

    def __init__(
        self,
        debug_deep_mind: bool,
        logger: logging.Logger,
        *,
        level_extractor: Callable[[str], int] | None = None,
        line_transformer: Callable[[str], str] | None = None,
    ) -> None:
        super().__init__()
        self.debug_deep_mind_enabled = debug_deep_mind
        self.logger = logger
        self.level_extractor = level_extractor
        self.line_transformer = line_transformer

    def debug_deep_mind(self, enabled: bool) -> None:
        self.debug_deep_mind_enabled = enabled

    def log_line(self, line: str) -> None:
        if is_instrumentation_line(line):
            if self.debug_deep_mind_enabled:
                # Info since production loggers rarely enable debug
                self.logger.info(line)
            return

        level = logging.DEBUG
        if self.level_extractor is not None:
            level = self.level_extractor(line)
            if level == NO_DISPLAY:
                return

        if self.line_transformer is not None:
            line = self.line_transformer(line)
            if line == "":
                return

        self.logger.log(level, line)