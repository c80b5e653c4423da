"""Backup modules, their schedules and the parsing of backup configurations."""

from __future__ import annotations

import abc
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Mapping

logger = logging.getLogger(__name__)

_MAX_UINT64 = 2**64 - 1

_UNIT_NANOSECONDS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class BackupModule(abc.ABC):
    """Something able to back up the node's data."""

    @abc.abstractmethod
    def backup(self, last_seen_block_num: int) -> str:
        """Perform a backup and return its name."""

    @abc.abstractmethod
    def requires_stop(self) -> bool:
        """Whether the node must be stopped while the module runs."""


class RestorableBackupModule(BackupModule):
    """A backup module that can also restore what it saved."""

    @abc.abstractmethod
    def restore(self, name: str) -> None:
        """Restore the backup with the given name."""


@dataclass
class BackupSchedule:
    blocks_between_runs: int = 0
    time_between_runs: timedelta = timedelta(0)
    required_hostname_match: str = ""  # backup only runs on a host with this name when set
    backuper_name: str = ""


BackupModuleFactory = Callable[[dict[str, str]], BackupModule]


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``1h30m``, ``90s`` or ``1.5h``."""
    invalid = ValueError(f'invalid duration "{text}"')
    body = text
    negative = False
    if body[:1] in ("+", "-") and body:
        negative = body[0] == "-"
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise invalid

    total = Decimal(0)
    position = 0
    while position < len(body):
        match = _DURATION_PART.match(body, position)
        if match is None:
            raise invalid
        number, unit = match.groups()
        total += Decimal(number) * _UNIT_NANOSECONDS[unit]
        position = match.end()

    microseconds = int(total / 1000)
    return timedelta(microseconds=-microseconds if negative else microseconds)


def new_backup_schedule(
    freq_blocks: str, freq_time: str, required_hostname: str, backuper_name: str
) -> BackupSchedule:
    """Build a schedule from a block frequency or, failing that, a time frequency."""
    if freq_blocks:
        if not re.fullmatch(r"[0-9]+", freq_blocks) or not 0 < int(freq_blocks) <= _MAX_UINT64:
            raise ValueError(f"invalid value for freq_block in backup schedule: {freq_blocks!r}")
        return BackupSchedule(
            blocks_between_runs=int(freq_blocks),
            required_hostname_match=required_hostname,
            backuper_name=backuper_name,
        )

    if freq_time:
        try:
            period = parse_duration(freq_time)
        except ValueError as err:
            raise ValueError(f"invalid value for freq_time in backup schedule: {err}") from err
        if period < timedelta(minutes=1):
            raise ValueError(f"invalid value for freq_time in backup schedule (duration: {freq_time})")
        return BackupSchedule(
            time_between_runs=period,
            required_hostname_match=required_hostname,
            backuper_name=backuper_name,
        )

    raise ValueError("schedule created without any frequency value")


def parse_kv_config_string(text: str) -> dict[str, str]:
    """Parse ``key=value`` pairs separated by whitespace; ``type`` is mandatory."""
    pairs: dict[str, str] = {}
    for field in text.split():
        parts = field.split("=")
        if len(parts) != 2:
            raise ValueError(f"invalid key=value in kv config string: {field}")
        key, value = parts
        pairs[key] = value

    if not pairs.get("type"):
        raise ValueError("no type defined in kv config string (type field mandatory)")
    return pairs


def parse_backup_configs(
    backup_configs: list[str],
    backup_module_factories: Mapping[str, BackupModuleFactory],
) -> tuple[dict[str, BackupModule], list[BackupSchedule]]:
    """Instantiate the backup modules and schedules described by the configs."""
    logger.info(
        "parsing backup configs %s with %d known factories (%s)",
        backup_configs,
        len(backup_module_factories),
        ", ".join(backup_module_factories),
    )

    modules: dict[str, BackupModule] = {}
    schedules: list[BackupSchedule] = []
    for config_text in backup_configs:
        config = parse_kv_config_string(config_text)
        module_type = config["type"]
        factory = backup_module_factories.get(module_type)
        if factory is None:
            raise ValueError(f"unknown backup module type {module_type!r}")

        try:
            modules[module_type] = factory(config)
        except Exception as err:
            raise ValueError(f"backup module {module_type!r} factory: {err}") from err

        freq_blocks = config.get("freq-blocks", "")
        freq_time = config.get("freq-time", "")
        if freq_blocks or freq_time:
            try:
                schedule = new_backup_schedule(
                    freq_blocks, freq_time, config.get("required-hostname", ""), module_type
                )
            except ValueError as err:
                raise ValueError(f"error setting up backup schedule for {module_type!r}: {err}") from err
            schedules.append(schedule)

    return modules, schedules


def select_backup_module(modules: Mapping[str, BackupModule], optional_name: str) -> BackupModule:
    """Pick the named module, or the only one registered."""
    if not modules:
        raise ValueError("no registered backup modules")

    if optional_name:
        try:
            return modules[optional_name]
        except KeyError:
            raise ValueError(f"invalid backup module: {optional_name}") from None

    if len(modules) > 1:
        raise ValueError(
            f"more than one module registered, and none specified ({','.join(modules)})"
        )
    return next(iter(modules.values()))


def select_restore_module(
    choices: Mapping[str, BackupModule], optional_name: str
) -> RestorableBackupModule:
    """Pick the named restorable module, or the only restorable one registered."""
    modules = {
        name: module
        for name, module in choices.items()
        if callable(getattr(module, "restore", None))
    }
    if not modules:
        raise ValueError("none of the registered backup modules support 'restore'")

    if optional_name:
        try:
            return modules[optional_name]
        except KeyError:
            raise ValueError(f"invalid restorable backup module: {optional_name}") from None

    if len(modules) > 1:
        raise ValueError(
            f"more than one restorable module registered, and none specified ({','.join(modules)})"
        )
    return next(iter(modules.values()))