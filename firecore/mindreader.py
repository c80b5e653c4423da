"""Reads blocks out of node log lines and archives them as one-block files."""

from __future__ import annotations

import abc
import contextlib
import json
import logging
import os
import queue
import re
import threading
from typing import Callable, Iterator, Protocol

from firecore.block import Block, BlockRef, HeadBlockUpdater, OnBlockWritten
from firecore.logplugin import LogPlugin, Shutter
from firecore.uploader import TRACE_ENABLED, Archiver, LocalStore

logger = logging.getLogger(__name__)

__all__ = [
    "TRACE_ENABLED",
    "ConsoleReader",
    "MindReaderPlugin",
    "validate_one_block_suffix",
]

LINES_CAPACITY = 10000

_ONEBLOCK_SUFFIX = re.compile(r"[\w\-]+", re.ASCII)
_CLOSED = object()


def validate_one_block_suffix(suffix: str) -> None:
    """Reject suffixes that would make one-block file names unreadable."""
    if suffix == "":
        raise ValueError("oneblock_suffix cannot be empty")
    if not _ONEBLOCK_SUFFIX.fullmatch(suffix):
        raise ValueError(f"oneblock_suffix contains invalid characters: {json.dumps(suffix)}")


class ConsoleReader(abc.ABC):
    """Turns a stream of log lines into blocks."""

    @abc.abstractmethod
    def read_block(self) -> Block:
        """Return the next block; raise EOFError once the lines are exhausted."""

    def close(self) -> None:
        """Release resources held by the reader."""


ConsoleReaderFactory = Callable[[Iterator[str]], ConsoleReader]


class _BlockPusher(Protocol):
    def push_block(self, block: Block) -> None: ...


class MindReaderPlugin(Shutter, LogPlugin):
    """Log plugin that extracts blocks from the node output and archives them."""

    name = "MindReaderPlugin"

    def __init__(
        self,
        console_reader_factory: ConsoleReaderFactory,
        *,
        archiver: Archiver | None = None,
        stop_block: int = 0,
        channel_capacity: int = 100,
        head_block_updater: HeadBlockUpdater | None = None,
        block_stream_server: _BlockPusher | None = None,
        first_streamable_block: int = 0,
    ) -> None:
        super().__init__()
        self.archiver = archiver
        self.stop_block = stop_block
        self.channel_capacity = channel_capacity
        self.head_block_updater = head_block_updater
        self.block_stream_server = block_stream_server
        self.first_streamable_block = first_streamable_block

        self._lines: queue.Queue[object] = queue.Queue(maxsize=LINES_CAPACITY)
        self._console_reader = console_reader_factory(self._iter_lines())
        self._on_block_written: OnBlockWritten | None = None
        self._last_seen_block: BlockRef | None = None
        self._last_seen_lock = threading.Lock()
        self._launched = False
        self._lines_closed = False
        self._close_lock = threading.Lock()
        self._consume_done = threading.Event()

    @classmethod
    def create(
        cls,
        one_blocks_store_url: str,
        working_directory: str,
        console_reader_factory: ConsoleReaderFactory,
        start_block_num: int,
        stop_block_num: int,
        channel_capacity: int,
        head_block_updater: HeadBlockUpdater | None,
        one_block_suffix: str,
        block_stream_server: _BlockPusher | None,
    ) -> MindReaderPlugin:
        """Build a plugin archiving into ``one_blocks_store_url`` through a local working store."""
        validate_one_block_suffix(one_block_suffix)
        logger.info(
            "creating mindreader plugin (store %s, suffix %s, working directory %s, start %d, stop %d, capacity %d)",
            one_blocks_store_url,
            one_block_suffix,
            working_directory,
            start_block_num,
            stop_block_num,
            channel_capacity,
        )

        try:
            os.makedirs(working_directory, exist_ok=True)
        except OSError as err:
            raise OSError(f"create working directory: {err}") from err

        try:
            local_store = LocalStore(os.path.join(working_directory, "uploadable-oneblock"), "dbin")
        except ValueError as err:
            raise ValueError(f"new local one block store: {err}") from err
        try:
            remote_store = LocalStore(one_blocks_store_url, "dbin.zst", "zstd")
        except ValueError as err:
            raise ValueError(f"new remote one block store: {err}") from err

        archiver = Archiver(start_block_num, one_block_suffix, local_store, remote_store)
        return cls(
            console_reader_factory,
            archiver=archiver,
            stop_block=stop_block_num,
            channel_capacity=channel_capacity,
            head_block_updater=head_block_updater,
            block_stream_server=block_stream_server,
        )

    def _iter_lines(self) -> Iterator[str]:
        while True:
            line = self._lines.get()
            if line is _CLOSED:
                with contextlib.suppress(queue.Full):
                    self._lines.put_nowait(_CLOSED)  # let other consumers see the end too
                return
            yield line  # type: ignore[misc]

    def launch(self) -> None:
        if self._launched:
            return
        self._launched = True
        logger.info("starting mindreader")

        close = getattr(self._console_reader, "close", None)
        if callable(close):
            self.on_terminating(lambda _error: close())

        if self.archiver is not None:
            self.archiver.start()

        blocks: queue.Queue[object] = queue.Queue(maxsize=self.channel_capacity)
        logger.info("launching blocks reading loop (capacity %d)", self.channel_capacity)
        threading.Thread(
            target=self._consume_read_flow, args=(blocks,), name="mindreader-consume", daemon=True
        ).start()
        threading.Thread(
            target=self._read_flow, args=(blocks,), name="mindreader-read", daemon=True
        ).start()

    def _read_flow(self, blocks: queue.Queue[object]) -> None:
        while True:
            try:
                self.read_one_message(blocks)
            except EOFError:
                logger.info("reached end of console reader stream, nothing more to do")
                break
            except Exception as err:
                logger.error("reading from console logs: %s", err)
                self.shutdown(err)
                # Keep reading lines so the supervised process can finish cleanly
                for _ in self._iter_lines():
                    pass
                break
        blocks.put(_CLOSED)

    def stop(self) -> None:
        logger.info("mindreader is stopping")
        if not self._launched:
            # Never launched: there is no read flow to wait for
            return

        self.shutdown(None)
        with self._close_lock:
            if not self._lines_closed:
                self._lines_closed = True
                self._lines.put(_CLOSED)

        logger.info("waiting until consume read flow is done processing blocks")
        self._consume_done.wait()
        logger.info("consume read flow terminated")

    def _shutdown_async(self, error: BaseException | None) -> None:
        # Shutting down from the reading thread would wait on this very thread
        threading.Thread(target=self.shutdown, args=(error,), daemon=True).start()

    def _consume_read_flow(self, blocks: queue.Queue[object]) -> None:
        logger.info("starting consume flow")
        try:
            while True:
                item = blocks.get()
                if item is _CLOSED:
                    logger.info("all blocks in channel were drained, exiting read flow")
                    if self.archiver is not None:
                        self.archiver.shutdown(None)
                        self.archiver.wait_terminated()
                        logger.info("archiver termination completed")
                    return

                block: Block = item  # type: ignore[assignment]
                logger.debug("got one block %d", block.number)

                if self.archiver is not None:
                    try:
                        self.archiver.store_block(block)
                    except Exception as err:
                        logger.error(
                            "failed storing block %s (#%d) in archiver, you will need to reprocess over this range: %s",
                            block.id,
                            block.number,
                            err,
                        )
                        if not self.is_terminating():
                            self._shutdown_async(RuntimeError(f"archiver store block failed: {err}"))
                        continue

                if self._on_block_written is not None:
                    try:
                        self._on_block_written(block)
                    except Exception as err:
                        logger.error("on block written callback failed: %s", err)
                        if not self.is_terminating():
                            self._shutdown_async(RuntimeError(f"onBlockWritten callback failed: {err}"))
                        continue

                if self.block_stream_server is not None:
                    try:
                        self.block_stream_server.push_block(block)
                    except Exception as err:
                        logger.error("failed passing block to block stream server: %s", err)
                        if not self.is_terminating():
                            self._shutdown_async(RuntimeError(f"block stream push block failed: {err}"))
                        continue
        finally:
            self._consume_done.set()

    def read_one_message(self, blocks: queue.Queue[object]) -> None:
        """Read one block and queue it; raises EOFError when the lines are exhausted."""
        block = self._console_reader.read_block()
        if block.number < self.first_streamable_block:
            return

        with self._last_seen_lock:
            self._last_seen_block = block.as_ref()

        if self.head_block_updater is not None:
            try:
                self.head_block_updater(block)
            except Exception as err:
                logger.info("shutting down because head block updater failed: %s", err)
                self._shutdown_async(err)

        blocks.put(block)

        if self.stop_block and block.number >= self.stop_block and not self.is_terminating():
            logger.info("shutting down because requested end block reached: %s", block)
            self._shutdown_async(None)

    def log_line(self, line: str) -> None:
        if self.is_terminating():
            return
        self._lines.put(line)

    def on_block_written(self, callback: OnBlockWritten) -> None:
        self._on_block_written = callback

    def last_seen_block(self) -> BlockRef | None:
        with self._last_seen_lock:
            return self._last_seen_block