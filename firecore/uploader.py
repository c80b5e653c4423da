"""One-block files written locally and uploaded to a destination store."""

from __future__ import annotations

import base64
import contextlib
import json
import logging
import os
import struct
import threading
import urllib.parse
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import BinaryIO, Iterator, Protocol

import zstandard

from firecore.block import Block
from firecore.logplugin import Shutter

logger = logging.getLogger(__name__)

TRACE_ENABLED = os.environ.get("TRACE") == "true"

UPLOAD_CONCURRENCY = 200
UPLOAD_INTERVAL = 0.5

_DBIN_MAGIC = b"dbin"
_DBIN_VERSION = 1
_CONTENT_TYPE = b"sf.bstream.v1.Block"
_BLOCK_ID_DISPLAY_LENGTH = 8


def _url_to_path(url: str) -> str:
    parsed = urllib.parse.urlsplit(url)
    if parsed.scheme == "" or len(parsed.scheme) == 1:
        return url
    if parsed.scheme == "file":
        return urllib.parse.unquote(parsed.netloc + parsed.path)
    raise ValueError(f"unsupported store URL scheme {parsed.scheme!r}")


def _is_temporary(filename: str) -> bool:
    return filename.startswith(".") and filename.endswith(".tmp")


class _PushTarget(Protocol):
    def push_local_file(self, local_path: str, name: str) -> None: ...


class LocalStore:
    """A directory of objects sharing one extension, optionally zstd-compressed."""

    def __init__(self, base_url: str | os.PathLike[str], extension: str = "", compression: str = "") -> None:
        if compression not in ("", "zstd"):
            raise ValueError(f"unsupported compression {compression!r}")
        self.base_path = _url_to_path(os.fspath(base_url))
        self.extension = extension
        self.compression = compression

    def _suffix(self) -> str:
        return f".{self.extension}" if self.extension else ""

    def walk(self, prefix: str = "") -> Iterator[str]:
        """Yield the names of stored objects starting with ``prefix``, sorted."""
        if not os.path.isdir(self.base_path):
            return
        suffix = self._suffix()
        names: list[str] = []
        for root, dirs, files in os.walk(self.base_path):
            dirs.sort()
            for filename in files:
                if _is_temporary(filename):
                    continue
                relative = os.path.relpath(os.path.join(root, filename), self.base_path)
                relative = relative.replace(os.sep, "/")
                if suffix:
                    if not relative.endswith(suffix):
                        continue
                    relative = relative[: -len(suffix)]
                if relative.startswith(prefix):
                    names.append(relative)
        yield from sorted(names)

    def object_path(self, name: str) -> str:
        return os.path.join(self.base_path, *name.split("/")) + self._suffix()

    def write_object(self, name: str, data: bytes | BinaryIO) -> None:
        """Store ``data`` under ``name``; the object appears whole or not at all."""
        if isinstance(data, (bytes, bytearray, memoryview)):
            content = bytes(data)
        else:
            content = data.read()
        if self.compression == "zstd":
            content = zstandard.ZstdCompressor().compress(content)

        path = self.object_path(name)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        temporary = os.path.join(directory, f".{os.path.basename(path)}.{uuid.uuid4().hex}.tmp")
        try:
            with open(temporary, "wb") as handle:
                handle.write(content)
            os.replace(temporary, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.remove(temporary)
            raise

    def push_local_file(self, local_path: str, name: str) -> None:
        """Move a local file into the store under ``name``."""
        with open(local_path, "rb") as handle:
            content = handle.read()
        self.write_object(name, content)
        os.remove(local_path)


def _truncate_block_id(block_id: str) -> str:
    if len(block_id) <= _BLOCK_ID_DISPLAY_LENGTH:
        return block_id
    return block_id[-_BLOCK_ID_DISPLAY_LENGTH:]


def block_file_name(block: Block, suffix: str) -> str:
    """Name of the one-block file holding ``block``."""
    return (
        f"{block.number:010d}-{_truncate_block_id(block.id)}-"
        f"{_truncate_block_id(block.parent_id)}-{block.lib_num}-{suffix}"
    )


def serialize_block(block: Block) -> bytes:
    """Encode a block as a single-message dbin file."""
    record = {
        "id": block.id,
        "number": block.number,
        "parent_id": block.parent_id,
        "parent_num": block.parent_num,
        "timestamp": block.timestamp.isoformat() if block.timestamp is not None else None,
        "lib_num": block.lib_num,
        "payload_type_url": block.payload_type_url,
        "payload": base64.b64encode(block.payload).decode("ascii"),
    }
    message = json.dumps(record, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return b"".join(
        (
            _DBIN_MAGIC,
            bytes([_DBIN_VERSION]),
            struct.pack(">H", len(_CONTENT_TYPE)),
            _CONTENT_TYPE,
            struct.pack(">I", len(message)),
            message,
        )
    )


def _decode_block(data: bytes) -> Block:
    if data[:4] != _DBIN_MAGIC:
        raise ValueError("not a dbin file")
    if len(data) < 7 or data[4] != _DBIN_VERSION:
        raise ValueError("unsupported dbin version")
    (type_length,) = struct.unpack(">H", data[5:7])
    offset = 7 + type_length
    if data[7:offset] != _CONTENT_TYPE:
        raise ValueError(f"unexpected content type {data[7:offset]!r}")
    (message_length,) = struct.unpack(">I", data[offset : offset + 4])
    message = data[offset + 4 : offset + 4 + message_length]
    if len(message) != message_length:
        raise ValueError("truncated dbin message")
    record = json.loads(message)
    timestamp = record["timestamp"]
    return Block(
        id=record["id"],
        number=record["number"],
        parent_id=record["parent_id"],
        parent_num=record["parent_num"],
        timestamp=datetime.fromisoformat(timestamp) if timestamp is not None else None,
        lib_num=record["lib_num"],
        payload_type_url=record["payload_type_url"],
        payload=base64.b64decode(record["payload"]),
    )


class FileUploader(Shutter):
    """Periodically moves every file of a local store to a destination store."""

    def __init__(
        self,
        local_store: LocalStore,
        destination_store: _PushTarget,
        *,
        concurrency: int = UPLOAD_CONCURRENCY,
        interval: float = UPLOAD_INTERVAL,
    ) -> None:
        super().__init__()
        self.local_store = local_store
        self.destination_store = destination_store
        self.concurrency = concurrency
        self.interval = interval
        self._lock = threading.Lock()

    def start(self) -> None:
        """Upload until shut down; one last pass runs after the shutdown request."""
        complete = threading.Event()
        wake = threading.Event()
        owner = threading.get_ident()

        def _on_terminating(_error: BaseException | None) -> None:
            wake.set()
            if threading.get_ident() != owner:
                complete.wait()

        try:
            self.on_terminating(_on_terminating)
            terminating = False
            while True:
                try:
                    self.upload_files()
                except Exception as err:
                    logger.warning("failed to upload file: %s", err)

                if terminating:
                    return
                if wake.wait(self.interval):
                    logger.info("terminating upload loop on next pass")
                    terminating = True
        finally:
            complete.set()

    def upload_files(self) -> None:
        """Push every local file once; raise the first failure."""
        with self._lock:
            failed = threading.Event()

            def _push(name: str) -> None:
                if TRACE_ENABLED:
                    logger.debug("uploading file to storage: %s", name)
                try:
                    self.destination_store.push_local_file(self.local_store.object_path(name), name)
                except Exception as err:
                    failed.set()
                    raise RuntimeError(f"moving file {name!r} to storage: {err}") from err

            futures: list[Future[None]] = []
            with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                try:
                    for name in self.local_store.walk(""):
                        if failed.is_set():
                            break
                        futures.append(pool.submit(_push, name))
                except OSError as err:
                    logger.debug("walking local store failed: %s", err)

            for future in futures:
                error = future.exception()
                if error is not None:
                    raise error


class Archiver(Shutter):
    """Writes blocks as one-block files and keeps them flowing to the remote store."""

    def __init__(
        self,
        start_block: int,
        oneblock_suffix: str,
        local_store: LocalStore,
        remote_store: _PushTarget,
    ) -> None:
        super().__init__()
        self.start_block = start_block
        self.oneblock_suffix = oneblock_suffix
        self.local_store = local_store
        self.file_uploader = FileUploader(local_store, remote_store)
        self._uploader_thread: threading.Thread | None = None

    def start(self) -> None:
        self.on_terminating(self._on_terminating)
        self.on_terminated(lambda err: logger.info("archiver is terminated: %s", err))
        self._uploader_thread = threading.Thread(
            target=self.file_uploader.start, name="file-uploader", daemon=True
        )
        self._uploader_thread.start()

    def _on_terminating(self, error: BaseException | None) -> None:
        logger.info("archiver is terminating: %s", error)
        self.file_uploader.shutdown(error)
        if self._uploader_thread is not None:
            self._uploader_thread.join()

    def store_block(self, block: Block) -> None:
        if block.number < self.start_block:
            logger.debug("skipping block %d below start block %d", block.number, self.start_block)
            return
        self.local_store.write_object(
            block_file_name(block, self.oneblock_suffix), serialize_block(block)
        )