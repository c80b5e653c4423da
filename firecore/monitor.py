"""Head block metrics and readiness of a supervised node."""

from __future__ import annotations

import queue
import threading
from datetime import datetime, timedelta, timezone

from firecore.block import Block


def _utc(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


class HeadTimeDrift:
    """Tracks how far behind wall-clock time the head block is."""

    def __init__(self, service_name: str) -> None:
        self.service_name = service_name
        self.block_time: datetime | None = None
        self.drift: timedelta = timedelta(0)

    def set_block_time(self, block_time: datetime) -> None:
        self.block_time = _utc(block_time)
        self.drift = datetime.now(timezone.utc) - self.block_time


class HeadBlockNumber:
    """Tracks the number of the head block."""

    def __init__(self, service_name: str) -> None:
        self.service_name = service_name
        self.value = 0

    def set(self, number: int) -> None:
        self.value = number


class AppReadiness:
    """Tracks whether the application reports itself as ready."""

    def __init__(self, service_name: str) -> None:
        self.service_name = service_name
        self.ready = False

    def set_ready(self) -> None:
        self.ready = True

    def set_not_ready(self) -> None:
        self.ready = False


class MetricsAndReadinessManager:
    """Updates head metrics from incoming blocks and derives readiness."""

    def __init__(
        self,
        head_block_time_drift: HeadTimeDrift | None,
        head_block_number: HeadBlockNumber | None,
        app_readiness: AppReadiness | None,
        readiness_max_latency: timedelta = timedelta(0),
    ) -> None:
        self._head_blocks: queue.Queue[Block] = queue.Queue(maxsize=1)
        self._ready = threading.Event()
        self.head_block_time_drift = head_block_time_drift
        self.head_block_number = head_block_number
        self.app_readiness = app_readiness
        self.readiness_max_latency = readiness_max_latency

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def update_head_block(self, block: Block) -> None:
        self._head_blocks.put(block)

    def _set_ready(self, ready: bool) -> None:
        if ready:
            self._ready.set()
            if self.app_readiness is not None:
                self.app_readiness.set_ready()
        else:
            self._ready.clear()
            if self.app_readiness is not None:
                self.app_readiness.set_not_ready()

    def process_block(self, block: Block) -> None:
        """Apply one head block to the metrics and the readiness probe."""
        if self.head_block_number is not None:
            self.head_block_number.set(block.number)

        if block.timestamp is None:  # never act upon missing timestamps
            return
        block_time = _utc(block.timestamp)

        if self.head_block_time_drift is not None:
            self.head_block_time_drift.set_block_time(block_time)

        latency = datetime.now(timezone.utc) - block_time
        if not self.readiness_max_latency or latency < self.readiness_max_latency:
            self._set_ready(True)
        else:
            self._set_ready(False)

    def launch(self, stop_event: threading.Event | None = None) -> None:
        """Consume head blocks until ``stop_event`` is set (forever without one)."""
        while stop_event is None or not stop_event.is_set():
            try:
                block = self._head_blocks.get(timeout=1.0)
            except queue.Empty:
                continue
            self.process_block(block)