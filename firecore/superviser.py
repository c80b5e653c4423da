"""Supervision of a node process whose output lines feed log plugins."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from typing import IO, Mapping, Sequence

from firecore.block import DeepMindDebuggable, StartOption
from firecore.logplugin import (
    KeepLastLinesLogPlugin,
    LogPlugin,
    Shutter,
    ToConsoleLogPlugin,
)

_STOP_GRACE_PERIOD = 10.0
_DRAIN_LOG_INTERVAL = 0.5


def format_log_lines(lines: Sequence[str]) -> str:
    """Indent each line for inclusion in a message; ``<None>`` when empty."""
    if not lines:
        return "<None>"
    return "\n".join("  " + line for line in lines)


class _Run:
    """One execution of the supervised command."""

    def __init__(self, process: subprocess.Popen[str]) -> None:
        self.process = process
        self.started_at = time.monotonic()
        self.done = threading.Event()
        self.readers: list[threading.Thread] = []


class Superviser(Shutter):
    """Runs a binary, hands each of its output lines to the registered plugins.

    ``env`` set to ``None`` lets the process inherit the parent environment;
    an empty mapping starts it without any variable set.
    """

    def __init__(
        self,
        binary: str,
        arguments: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__()
        self.binary = binary
        self.arguments = list(arguments)
        self.env = dict(env) if env is not None else None
        self.logger = logger or logging.getLogger(__name__)

        self._run: _Run | None = None
        self._cmd_lock = threading.Lock()
        self._plugins: list[LogPlugin] = []
        self._plugins_lock = threading.RLock()
        self._never = threading.Event()

        self.on_terminating(self._terminate)

    def _terminate(self, _error: BaseException | None) -> None:
        self.logger.info("superviser is terminating")
        try:
            self.stop()
        except OSError as err:
            self.logger.error("failed to stop supervised node process: %s", err)

        self.logger.info("shutting down plugins (last exit code %d)", self.last_exit_code())
        self._end_log_plugins()

    def register_log_plugin(self, plugin: LogPlugin) -> None:
        with self._plugins_lock:
            self._plugins.append(plugin)
            count = len(self._plugins)

        on_terminating = getattr(plugin, "on_terminating", None)
        if callable(on_terminating):
            plugin_name = getattr(plugin, "name", type(plugin).__name__)
            self.logger.info("adding superviser shutdown to plugin %s", plugin_name)

            def _propagate(error: BaseException | None) -> None:
                if not self.is_terminating():
                    self.logger.info("superviser shutting down because of plugin %s", plugin_name)
                    threading.Thread(target=self.shutdown, args=(error,), daemon=True).start()

            on_terminating(_propagate)

        self.logger.info("registered log plugin (plugin count %d)", count)

    def log_plugins(self) -> list[LogPlugin]:
        with self._plugins_lock:
            return list(self._plugins)

    def _set_deep_mind_debug(self, enabled: bool) -> None:
        self.logger.info("setting deep mind debug mode to %s", enabled)
        for plugin in self.log_plugins():
            if isinstance(plugin, DeepMindDebuggable):
                plugin.debug_deep_mind(enabled)

    def wait_stopped(self, timeout: float | None = None) -> bool:
        """Wait until the current process ended; blocks for ``timeout`` when none was started."""
        run = self._run
        if run is None:
            return self._never.wait(timeout)
        return run.done.wait(timeout)

    def last_exit_code(self) -> int:
        run = self._run
        if run is None:
            return 0
        code = run.process.returncode
        return 0 if code is None else code

    def last_log_lines(self) -> list[str]:
        plugins = self.log_plugins()
        if any(isinstance(plugin, ToConsoleLogPlugin) for plugin in plugins):
            # The user already saw those lines on the console
            return []
        for plugin in plugins:
            if isinstance(plugin, KeepLastLinesLogPlugin):
                return plugin.last_lines()
        return []

    def last_seen_block_num(self) -> int:
        for plugin in self.log_plugins():
            getter = getattr(plugin, "last_seen_block", None)
            if callable(getter):
                ref = getter()
                return ref.num if ref is not None else 0
        return 0

    def start(self, *args: StartOption) -> None:
        """Launch the plugins and the process unless it is already running."""
        for option in args:
            if option == StartOption.ENABLE_DEBUG_DEEPMIND:
                self._set_deep_mind_debug(True)
            elif option == StartOption.DISABLE_DEBUG_DEEPMIND:
                self._set_deep_mind_debug(False)

        for plugin in self.log_plugins():
            plugin.launch()

        with self._cmd_lock:
            run = self._run
            if run is not None:
                if run.process.poll() is None:
                    self.logger.info("underlying process already running, nothing to do")
                    return
                if not run.done.is_set():
                    self.logger.info("underlying process is finishing, waiting for it to complete")
                    run.done.wait()

            self.logger.info(
                "creating new command instance and launch read loop (binary %s, arguments %s)",
                self.binary,
                self.arguments,
            )
            self._run = self._spawn()

    def _spawn(self) -> _Run:
        process = subprocess.Popen(
            [self.binary, *self.arguments],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=self.env,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            start_new_session=os.name == "posix",
        )
        run = _Run(process)
        for stream in (process.stdout, process.stderr):
            reader = threading.Thread(target=self._read_stream, args=(stream,), daemon=True)
            reader.start()
            run.readers.append(reader)
        threading.Thread(target=self._wait_run, args=(run,), daemon=True).start()
        return run

    def _read_stream(self, stream: IO[str]) -> None:
        with stream:
            for raw in stream:
                line = raw[:-1] if raw.endswith("\n") else raw
                if line.endswith("\r"):
                    line = line[:-1]
                self._process_log_line(line)

    def _wait_run(self, run: _Run) -> None:
        exit_code = run.process.wait()
        # Keep consuming output until both streams are fully drained
        for reader in run.readers:
            reader.join()

        if exit_code == 0:
            self.logger.info("command terminated with zero status")
        else:
            self.logger.error(
                "command terminated with non-zero status, last log lines:\n%s\n"
                "(command %s, exit code %d, pid %d, runtime %.3fs)",
                format_log_lines(self.last_log_lines()),
                self.binary,
                exit_code,
                run.process.pid,
                time.monotonic() - run.started_at,
            )
        run.done.set()

    def _signal(self, run: _Run, signum: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(run.process.pid, signum)
            elif signum == signal.SIGTERM:
                run.process.terminate()
            else:
                run.process.kill()
        except ProcessLookupError:
            pass

    def stop(self) -> None:
        """Terminate the process and wait until its output is drained."""
        with self._cmd_lock:
            self.logger.info("supervisor received a stop request, terminating supervised node process")
            run = self._run
            if run is None or run.done.is_set():
                self.logger.info("underlying process is not running, nothing to do")
                return

            if run.process.poll() is None:
                self.logger.info("stopping underlying process")
                self._signal(run, signal.SIGTERM)
                if not run.done.wait(_STOP_GRACE_PERIOD):
                    self._signal(run, getattr(signal, "SIGKILL", signal.SIGTERM))

            while not run.done.wait(_DRAIN_LOG_INTERVAL):
                self.logger.debug("still blocking until command actually ends")

            self.logger.info("supervised process has been terminated, stdout and stderr drained")
            self._run = None

    def is_running(self) -> bool:
        with self._cmd_lock:
            run = self._run
            return run is not None and not run.done.is_set()

    def _end_log_plugins(self) -> None:
        with self._plugins_lock:
            for plugin in self._plugins:
                self.logger.info("stopping plugin %s", getattr(plugin, "name", type(plugin).__name__))
                plugin.stop()
        self.logger.info("all plugins closed")

    def _process_log_line(self, line: str) -> None:
        with self._plugins_lock:
            for plugin in self._plugins:
                plugin.log_line(line)


class GenericSuperviser(Superviser):
    """Default chain superviser: a named binary run with fixed arguments."""

    def __init__(
        self,
        name: str,
        binary: str,
        arguments: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(binary, arguments, env=env, logger=logger)
        self.name = name

    def command(self) -> str:
        return self.binary + " " + " ".join(self.arguments)

    def server_id(self) -> str:
        return ""


def new_node_log_plugin(debug_firehose: bool) -> ToConsoleLogPlugin:
    """The log plugin that echoes node output to the console."""
    return ToConsoleLogPlugin(debug_firehose)