"""Operator: runs commands against a supervised chain node."""

from __future__ import annotations

import json
import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Mapping, Protocol, runtime_checkable

from firecore.backup import (
    BackupModule,
    BackupSchedule,
    select_backup_module,
    select_restore_module,
)
from firecore.block import StartOption
from firecore.logplugin import Shutter
from firecore.superviser import format_log_lines

logger = logging.getLogger(__name__)

COMMAND_QUEUE_SIZE = 10
PRODUCTION_ROUND_TIMEOUT = 3 * 60.0
_POLL_INTERVAL = 0.05
_RUNNING_POLL_INTERVAL = 0.01
_BLOCK_POLL_INTERVAL = 1.0


def _seconds(value: float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


@runtime_checkable
class Bootstrapper(Protocol):
    """Prepares the node data before the chain is first started."""

    def bootstrap(self) -> None: ...


class CleanExit(Exception):
    """Raised by a command to make the operator stop without error."""

    def __init__(self, message: str = "clean exit") -> None:
        super().__init__(message)


@runtime_checkable
class _ProducerSuperviser(Protocol):
    def is_producing(self) -> bool: ...

    def is_active_producer(self) -> bool: ...

    def resume_production(self) -> None: ...

    def pause_production(self) -> None: ...

    def wait_until_end_of_next_production_round(self, timeout: float) -> None: ...


@dataclass
class OperatorOptions:
    bootstrapper: Bootstrapper | None = None
    enable_supervisor_monitoring: bool = False
    # Delay before stopping the superviser, during which readiness reports not ready
    shutdown_delay: float | timedelta = 0.0


@dataclass(eq=False)
class Command:
    """A named request to the operator, completed exactly once."""

    name: str
    params: dict[str, str] = field(default_factory=dict)
    parent: Command | None = None
    _done: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _error: BaseException | None = field(default=None, init=False, repr=False)

    def complete(self, error: BaseException | None = None) -> None:
        """Record the outcome; only the first call counts."""
        with self._lock:
            if self._done.is_set():
                return
            self._error = error
            self._done.set()

        if error is not None and not isinstance(error, CleanExit):
            logger.error("command %s failed: %s", self.name, error)

        if self.parent is not None:
            self.parent.complete(error)

    def is_done(self) -> bool:
        return self._done.is_set()

    def result(self, timeout: float | None = None) -> None:
        """Wait for completion and raise the command's error, if any."""
        if not self._done.wait(timeout):
            raise TimeoutError(f"command {self.name} did not complete in time")
        if self._error is not None:
            raise self._error

    def __str__(self) -> str:
        return f"{self.name} {json.dumps(self.params, sort_keys=True)}"


class Operator(Shutter):
    """Serialises maintenance, backup and lifecycle commands for a chain superviser."""

    def __init__(
        self,
        superviser: Any,
        chain_readiness: Any = None,
        options: OperatorOptions | None = None,
    ) -> None:
        super().__init__()
        self.superviser = superviser
        self.chain_readiness = chain_readiness
        self.options = options or OperatorOptions()
        self.last_start_command: float | None = None

        self.backup_modules: dict[str, BackupModule] = {}
        self.backup_schedules: list[BackupSchedule] = []

        self._commands: queue.Queue[Command] = queue.Queue(maxsize=COMMAND_QUEUE_SIZE)
        self._about_to_stop = threading.Event()
        self._terminating_event = threading.Event()
        self.on_terminating(lambda _error: self._terminating_event.set())

        def _superviser_terminated(error: BaseException | None) -> None:
            if not self.is_terminating():
                logger.info("chain superviser is shutting down operator")
                self.shutdown(error)

        superviser.on_terminated(_superviser_terminated)

        def _operator_terminating(error: BaseException | None) -> None:
            # The superviser waits for its plugins to terminate
            if not superviser.is_terminating():
                logger.info("operator is terminating: %s", error)
                superviser.shutdown(error)
            logger.info("operator is waiting for superviser to shutdown")
            superviser.wait_terminated()
            logger.info("operator done waiting for superviser to shutdown")

        self.on_terminating(_operator_terminating)

    @property
    def about_to_stop(self) -> bool:
        """True while the node is being stopped on purpose."""
        return self._about_to_stop.is_set()

    def register_backup_module(self, name: str, module: BackupModule) -> None:
        existing = self.backup_modules.get(name)
        if existing is not None:
            raise ValueError(
                f"backup module {name!r} is already registered, previous module type {type(existing).__name__}"
            )
        self.backup_modules[name] = module

    def register_backup_schedule(self, schedule: BackupSchedule) -> None:
        self.backup_schedules.append(schedule)

    def submit(self, command: Command | str, wait: bool = False) -> Command:
        """Queue a command; with ``wait``, block until done and raise its error."""
        if isinstance(command, str):
            command = Command(command)
        logger.info("sending %s command to operator: %s", "sync" if wait else "async", command)
        self._commands.put(command)
        if wait:
            command.result()
        return command

    def launch(self, http_server: Any = None) -> None:
        """Start the chain and process commands until the operator stops.

        Raises when a command fails irrecoverably or when the node stopped
        on its own; returns normally on a clean exit.
        """
        if http_server is not None:
            logger.info("launching operator HTTP server")
            http_server.start()

        if self.options.enable_supervisor_monitoring:
            monitor = getattr(self.superviser, "monitor", None)
            if callable(monitor):
                threading.Thread(target=monitor, name="superviser-monitor", daemon=True).start()

        self.launch_backup_schedules()

        if self.options.bootstrapper is not None:
            logger.info("operator calling bootstrap function")
            try:
                self.options.bootstrapper.bootstrap()
            except Exception as err:
                raise RuntimeError(f"unable to bootstrap chain: {err}") from err

        self._commands.put(Command("start"))

        while True:
            if self.superviser.wait_stopped(0):
                if self.superviser.is_terminating():
                    logger.info("superviser terminating, waiting for operator...")
                    self._terminating_event.wait()
                    if self.error is not None:
                        raise self.error
                    return

                last_lines = self.superviser.last_log_lines()
                message = (
                    f"instance {json.dumps(self.superviser.name)} stopped "
                    f"(exit code: {self.superviser.last_exit_code()}), shutting down"
                )
                if last_lines:
                    message += f": last log lines:\n{format_log_lines(last_lines)}"
                self.shutdown(RuntimeError(message))
                continue

            try:
                command = self._commands.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue

            if command.name == "start":
                self.last_start_command = time.time()
            try:
                self.run_command(command)
            except CleanExit as err:
                command.complete(err)
                return
            except Exception as err:
                command.complete(err)
                raise RuntimeError(f"command {command.name} execution failed: {err}") from err
            command.complete(None)

    def _run_sub_command(self, name: str, parent: Command) -> None:
        self.run_command(Command(name, parent=parent))

    def _clean_superviser_stop(self) -> None:
        self._about_to_stop.set()
        try:
            delay = _seconds(self.options.shutdown_delay)
            if delay and not self.is_terminating():
                logger.info("marked as not ready, waiting %.3fs before actually stopping", delay)
                time.sleep(delay)
            self.superviser.stop()
        finally:
            self._about_to_stop.clear()

    def run_command(self, command: Command) -> None:
        """Execute one command; raises only for irrecoverable states."""
        logger.info("received operator command %s", command)
        name = command.name
        params = command.params

        if name == "maintenance":
            logger.info("preparing to stop process")
            self._clean_superviser_stop()
            logger.info("successfully put in maintenance")

        elif name == "restore":
            try:
                module = select_restore_module(self.backup_modules, params.get("name", ""))
            except Exception as err:
                command.complete(err)
                return

            logger.info("stopping to restore a backup")
            if module.requires_stop():
                self._clean_superviser_stop()

            module.restore(params.get("backupName", "latest"))

            logger.info("restarting after restore")
            if module.requires_stop():
                self._run_sub_command("start", command)

        elif name == "backup":
            try:
                module = select_backup_module(self.backup_modules, params.get("name", ""))
            except Exception as err:
                command.complete(err)
                return

            logger.info("stopping to perform a backup")
            if module.requires_stop():
                self._clean_superviser_stop()

            backup_name = module.backup(self.superviser.last_seen_block_num() & 0xFFFFFFFF)
            logger.info("completed backup %s", backup_name)

            logger.info("restarting after backup")
            if module.requires_stop():
                self._run_sub_command("start", command)

        elif name == "reload":
            logger.info("preparing for reload")
            self._clean_superviser_stop()
            self._run_sub_command("start", command)

        elif name == "safely_resume_production":
            self._safely_resume_production(command)

        elif name == "safely_pause_production":
            self._safely_pause_production(command)

        elif name == "safely_reload":
            logger.info("preparing for safely reload")
            producer = self.superviser
            if isinstance(producer, _ProducerSuperviser) and producer.is_active_producer():
                logger.info("waiting right after production round")
                try:
                    producer.wait_until_end_of_next_production_round(PRODUCTION_ROUND_TIMEOUT)
                except Exception as err:
                    command.complete(RuntimeError(f"timeout waiting for production round: {err}"))
                    return

            logger.info("issuing 'reload' now")
            while True:
                try:
                    interim = self._commands.get_nowait()
                except queue.Empty:
                    break
                logger.info("dropping command %s queued while safely_reload was running", interim)
                interim.complete(RuntimeError(f"{interim.name} dropped by safely_reload"))

            self._run_sub_command("reload", command)

        elif name in ("start", "resume"):
            logger.info("preparing for start")
            if self.superviser.is_running():
                logger.info("chain is already running")
                return

            options: list[StartOption] = []
            value = params.get("debug-firehose-logs", "")
            if value:
                if value == "true":
                    options.append(StartOption.ENABLE_DEBUG_DEEPMIND)
                else:
                    options.append(StartOption.DISABLE_DEBUG_DEEPMIND)

            try:
                self.superviser.start(*options)
            except Exception as err:
                raise RuntimeError(f"error starting chain superviser: {err}") from err
            logger.info("successfully started service")

    def _safely_resume_production(self, command: Command) -> None:
        logger.info("preparing for safely resume production")
        producer = self.superviser
        if not isinstance(producer, _ProducerSuperviser):
            command.complete(RuntimeError("the chain superviser does not support producing blocks"))
            return
        try:
            producing = producer.is_producing()
        except Exception as err:
            command.complete(RuntimeError(f"unable to check if producing: {err}"))
            return

        if producing:
            logger.info("block production was already running, doing nothing")
            return
        logger.info("resuming production of blocks")
        try:
            producer.resume_production()
        except Exception as err:
            command.complete(RuntimeError(f"error resuming production of blocks: {err}"))
            return
        logger.info("successfully resumed block production")

    def _safely_pause_production(self, command: Command) -> None:
        logger.info("preparing for safely pause production")
        producer = self.superviser
        if not isinstance(producer, _ProducerSuperviser):
            command.complete(RuntimeError("the chain superviser does not support producing blocks"))
            return
        try:
            producing = producer.is_producing()
        except Exception as err:
            command.complete(RuntimeError(f"unable to check if producing: {err}"))
            return

        if not producing:
            logger.info("block production is already paused, command is a no-op")
            return

        logger.info("waiting to pause the producer")
        try:
            producer.wait_until_end_of_next_production_round(PRODUCTION_ROUND_TIMEOUT)
        except Exception as err:
            command.complete(RuntimeError(f"timeout waiting for production round: {err}"))
            return

        logger.info("pausing block production")
        try:
            producer.pause_production()
        except Exception as err:
            command.complete(RuntimeError(f"unable to pause production correctly: {err}"))
            return
        logger.info("successfully paused block production")

    def launch_backup_schedules(self) -> None:
        """Start a background thread for every schedule applicable to this host."""
        for schedule in self.backup_schedules:
            if schedule.required_hostname_match:
                try:
                    hostname = socket.gethostname()
                except OSError as err:
                    logger.error("disabling backup schedule, cannot retrieve hostname: %s", err)
                    continue
                if hostname != schedule.required_hostname_match:
                    logger.info(
                        "disabling backup schedule %s, hostname %s does not match required %s",
                        schedule.backuper_name,
                        hostname,
                        schedule.required_hostname_match,
                    )
                    continue

            params = {"name": schedule.backuper_name}
            period = _seconds(schedule.time_between_runs or 0)
            if period > 1:
                logger.info("starting time-based backup schedule every %.0fs", period)
                threading.Thread(
                    target=self.run_every_period, args=(period, "backup", params), daemon=True
                ).start()
            if schedule.blocks_between_runs and schedule.blocks_between_runs > 0:
                logger.info("starting block-based backup schedule every %d blocks", schedule.blocks_between_runs)
                threading.Thread(
                    target=self.run_every_x_block,
                    args=(schedule.blocks_between_runs, "backup", params),
                    daemon=True,
                ).start()

    def run_every_period(
        self, period: float | timedelta, command_name: str, params: Mapping[str, str]
    ) -> None:
        """Queue a command every ``period`` while the chain runs."""
        while not self.superviser.is_running():
            if self._terminating_event.wait(_RUNNING_POLL_INTERVAL):
                return

        interval = _seconds(period)
        while not self._terminating_event.wait(interval):
            if self.superviser.is_running():
                self._commands.put(Command(command_name, dict(params)))

    def run_every_x_block(self, freq: int, command_name: str, params: Mapping[str, str]) -> None:
        """Queue a command each time the head moves more than ``freq`` blocks."""
        last_head_reference = 0
        while not self._terminating_event.wait(_BLOCK_POLL_INTERVAL):
            last_seen = self.superviser.last_seen_block_num()
            if last_seen == 0:
                continue
            if last_head_reference == 0:
                last_head_reference = last_seen
            if last_seen > last_head_reference + freq:
                self._commands.put(Command(command_name, dict(params)))
                last_head_reference = last_seen