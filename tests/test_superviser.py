import io
import queue
import threading

import pytest

from firecore.block import BlockRef, StartOption
from firecore.logplugin import (
    FunctionLogPlugin,
    KeepLastLinesLogPlugin,
    LogPlugin,
    ToConsoleLogPlugin,
)
from firecore.superviser import (
    GenericSuperviser,
    Superviser,
    format_log_lines,
    new_node_log_plugin,
)

INFINITE_SCRIPT = """
echo "Starting"
while true; do
    sleep 0.25
    echo "In loop"
done
"""

TIMEOUT = 5.0


@pytest.fixture
def make_superviser():
    created = []

    def factory(script):
        superviser = Superviser("sh", ["-c", script])
        created.append(superviser)
        return superviser

    yield factory
    for superviser in created:
        superviser.stop()


def _collect(superviser):
    lines = queue.Queue()
    superviser.register_log_plugin(FunctionLogPlugin(lines.put))
    return lines


class _RecordingPlugin(LogPlugin):
    def __init__(self):
        self.stopped = False
        self.launched = 0

    def launch(self):
        self.launched += 1

    def log_line(self, line):
        pass

    def stop(self):
        self.stopped = True


class _BlockPlugin(LogPlugin):
    def log_line(self, line):
        pass

    def last_seen_block(self):
        return BlockRef("abc", 42)


def test_not_running_after_creation(make_superviser):
    assert make_superviser(INFINITE_SCRIPT).is_running() is False


def test_starts_correctly(make_superviser):
    superviser = make_superviser(INFINITE_SCRIPT)
    lines = _collect(superviser)
    superviser.start()
    assert lines.get(timeout=TIMEOUT) == "Starting"
    assert superviser.is_running() is True


def test_can_be_restarted_correctly(make_superviser):
    superviser = make_superviser(INFINITE_SCRIPT)
    lines = _collect(superviser)

    superviser.start()
    assert lines.get(timeout=TIMEOUT) == "Starting"

    superviser.stop()
    assert superviser.is_running() is False

    while not lines.empty():
        lines.get_nowait()

    superviser.start()
    assert lines.get(timeout=TIMEOUT) == "Starting"
    assert superviser.is_running() is True


def test_captures_stdout_correctly(make_superviser):
    superviser = make_superviser("echo first; sleep 0.1; echo second")
    lines = _collect(superviser)
    superviser.start()
    received = [lines.get(timeout=TIMEOUT), lines.get(timeout=TIMEOUT)]
    assert received == ["first", "second"]


def test_exit_code_and_stopped(make_superviser):
    superviser = make_superviser("echo bye; exit 3")
    superviser.start()
    assert superviser.wait_stopped(TIMEOUT) is True
    assert superviser.last_exit_code() == 3
    assert superviser.is_running() is False


def test_wait_stopped_without_process_times_out(make_superviser):
    superviser = make_superviser("true")
    assert superviser.wait_stopped(0.05) is False
    assert superviser.last_exit_code() == 0


def test_last_log_lines_from_keep_last_lines(make_superviser):
    superviser = make_superviser("echo a; echo b; echo c")
    superviser.register_log_plugin(KeepLastLinesLogPlugin(2))
    superviser.start()
    assert superviser.wait_stopped(TIMEOUT)
    assert superviser.last_log_lines() == ["b", "c"]


def test_last_log_lines_hidden_with_console_plugin(make_superviser):
    superviser = make_superviser("echo a")
    superviser.register_log_plugin(KeepLastLinesLogPlugin(2))
    superviser.register_log_plugin(ToConsoleLogPlugin(stream=io.StringIO()))
    superviser.start()
    assert superviser.wait_stopped(TIMEOUT)
    assert superviser.last_log_lines() == []


def test_start_option_enables_deep_mind(make_superviser):
    superviser = make_superviser("echo 'FIRE x'; echo plain")
    plugin = KeepLastLinesLogPlugin(5, False)
    superviser.register_log_plugin(plugin)
    superviser.start(StartOption.ENABLE_DEBUG_DEEPMIND)
    assert superviser.wait_stopped(TIMEOUT)
    assert plugin.include_deep_mind_lines is True
    assert plugin.last_lines() == ["FIRE x", "plain"]


def test_start_option_disables_deep_mind(make_superviser):
    superviser = make_superviser("echo 'FIRE x'; echo plain")
    plugin = KeepLastLinesLogPlugin(5, True)
    superviser.register_log_plugin(plugin)
    superviser.start(StartOption.DISABLE_DEBUG_DEEPMIND)
    assert superviser.wait_stopped(TIMEOUT)
    assert plugin.last_lines() == ["plain"]


def test_plugins_launched_on_start(make_superviser):
    superviser = make_superviser("true")
    plugin = _RecordingPlugin()
    superviser.register_log_plugin(plugin)
    superviser.start()
    assert plugin.launched == 1
    assert superviser.log_plugins() == [plugin]


def test_shutdown_stops_process_and_plugins(make_superviser):
    superviser = make_superviser(INFINITE_SCRIPT)
    lines = _collect(superviser)
    plugin = _RecordingPlugin()
    superviser.register_log_plugin(plugin)
    superviser.start()
    assert lines.get(timeout=TIMEOUT) == "Starting"

    superviser.shutdown(None)
    assert superviser.is_terminated() is True
    assert superviser.is_running() is False
    assert plugin.stopped is True


def test_plugin_shutdown_propagates(make_superviser):
    superviser = make_superviser("true")
    plugin = KeepLastLinesLogPlugin(3)
    superviser.register_log_plugin(plugin)
    error = RuntimeError("boom")
    plugin.shutdown(error)
    assert superviser.wait_terminated(TIMEOUT) is True
    assert superviser.error is error


def test_last_seen_block_num(make_superviser):
    superviser = make_superviser("true")
    assert superviser.last_seen_block_num() == 0
    superviser.register_log_plugin(_BlockPlugin())
    assert superviser.last_seen_block_num() == 42


def test_format_log_lines():
    assert format_log_lines([]) == "<None>"
    assert format_log_lines(["a", "b"]) == "  a\n  b"


def test_generic_superviser_command():
    superviser = GenericSuperviser("node", "geth", ["--a", "--b"])
    assert superviser.command() == "geth --a --b"
    assert superviser.server_id() == ""
    assert superviser.name == "node"


def test_new_node_log_plugin():
    plugin = new_node_log_plugin(True)
    assert isinstance(plugin, ToConsoleLogPlugin)
    assert plugin.debug_deep_mind_enabled is True


def test_running_state_is_thread_safe(make_superviser):
    superviser = make_superviser(INFINITE_SCRIPT)
    lines = _collect(superviser)
    superviser.start()
    assert lines.get(timeout=TIMEOUT) == "Starting"
    results = []
    threads = [threading.Thread(target=lambda: results.append(superviser.is_running())) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert results == [True] * 4