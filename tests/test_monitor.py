import threading
import time
from datetime import datetime, timedelta, timezone

from firecore.block import Block
from firecore.monitor import (
    AppReadiness,
    HeadBlockNumber,
    HeadTimeDrift,
    MetricsAndReadinessManager,
)


def _manager(max_latency=timedelta(minutes=1)):
    drift = HeadTimeDrift("test")
    number = HeadBlockNumber("test")
    readiness = AppReadiness("test")
    manager = MetricsAndReadinessManager(drift, number, readiness, max_latency)
    return manager, drift, number, readiness


def test_recent_block_makes_ready():
    manager, drift, number, readiness = _manager()
    now = datetime.now(timezone.utc)
    manager.process_block(Block(id="a", number=42, timestamp=now))
    assert manager.is_ready() is True
    assert readiness.ready is True
    assert number.value == 42
    assert drift.block_time == now


def test_old_block_makes_not_ready():
    manager, drift, number, readiness = _manager()
    manager.process_block(Block(id="a", number=1, timestamp=datetime.now(timezone.utc)))
    old = datetime.now(timezone.utc) - timedelta(hours=1)
    manager.process_block(Block(id="b", number=2, timestamp=old))
    assert manager.is_ready() is False
    assert readiness.ready is False
    assert drift.drift >= timedelta(hours=1)


def test_missing_timestamp_only_updates_number():
    manager, drift, number, readiness = _manager()
    manager.process_block(Block(id="a", number=7))
    assert number.value == 7
    assert manager.is_ready() is False
    assert drift.block_time is None


def test_zero_max_latency_always_ready():
    manager, _, _, readiness = _manager(timedelta(0))
    old = datetime.now(timezone.utc) - timedelta(days=30)
    manager.process_block(Block(id="a", number=1, timestamp=old))
    assert manager.is_ready() is True
    assert readiness.ready is True


def test_naive_timestamp_treated_as_utc():
    manager, drift, _, _ = _manager()
    naive = datetime.now(timezone.utc).replace(tzinfo=None)
    manager.process_block(Block(id="a", number=1, timestamp=naive))
    assert drift.block_time.tzinfo is timezone.utc
    assert manager.is_ready() is True


def test_manager_without_metrics():
    manager = MetricsAndReadinessManager(None, None, None, timedelta(minutes=1))
    manager.process_block(Block(id="a", number=1, timestamp=datetime.now(timezone.utc)))
    assert manager.is_ready() is True


def test_launch_consumes_updates_until_stopped():
    manager, _, number, _ = _manager()
    stop = threading.Event()
    worker = threading.Thread(target=manager.launch, args=(stop,), daemon=True)
    worker.start()

    manager.update_head_block(Block(id="a", number=99, timestamp=datetime.now(timezone.utc)))
    deadline = time.monotonic() + 5
    while not manager.is_ready() and time.monotonic() < deadline:
        time.sleep(0.01)

    stop.set()
    worker.join(timeout=5)
    assert manager.is_ready() is True
    assert number.value == 99
    assert worker.is_alive() is False