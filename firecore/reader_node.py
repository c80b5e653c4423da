"""Reader node variables and bootstrapping of its data directory from an archive."""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tarfile
import urllib.parse
import urllib.request
from typing import BinaryIO, Callable, Iterator

import zstandard

logger = logging.getLogger(__name__)

READER_NODE_VARIABLES_DOCUMENTATION: dict[str, str] = {
    "{data-dir}": "The current data-dir path defined by the flag 'data-dir'",
    "{node-data-dir}": "The node data dir path defined by the flag 'reader-node-data-dir'",
    "{hostname}": "The machine's hostname",
    "{start-block-num}": "The resolved start block number defined by the flag "
    "'reader-node-start-block-num' (can be overwritten)",
    "{stop-block-num}": "The stop block number defined by the flag 'reader-node-stop-block-num'",
}

READER_NODE_VARIABLES: tuple[str, ...] = tuple(READER_NODE_VARIABLES_DOCUMENTATION)

_OPEN_TIMEOUT = 30 * 60


def reader_node_variables_values(resolver: Callable[[str], str]) -> dict[str, str]:
    """Resolve every reader node variable."""
    return {variable: resolver(variable) for variable in READER_NODE_VARIABLES}


def is_bootstrapped(data_dir: str | os.PathLike[str]) -> bool:
    """Whether the directory holds at least one file, at any depth."""
    path = os.fspath(data_dir)
    if os.path.lexists(path) and not os.path.isdir(path):
        return True

    def _on_error(err: OSError) -> None:
        if not isinstance(err, FileNotFoundError):
            logger.warning("error while checking for bootstrapped status: %s", err)

    for _, _, files in os.walk(path, onerror=_on_error):
        if files:
            return True
    return False


@contextlib.contextmanager
def _open_object(url: str) -> Iterator[BinaryIO]:
    """Open a zstd-compressed object at a local path, file URL or HTTP(S) URL."""
    parsed = urllib.parse.urlsplit(url)
    if parsed.scheme == "" or len(parsed.scheme) == 1:
        raw = open(url, "rb")
    elif parsed.scheme == "file":
        raw = open(urllib.parse.unquote(parsed.netloc + parsed.path), "rb")
    elif parsed.scheme in ("http", "https"):
        raw = urllib.request.urlopen(url, timeout=_OPEN_TIMEOUT)
    else:
        raise ValueError(f"unsupported bootstrap data URL scheme {parsed.scheme!r}")

    with raw, zstandard.ZstdDecompressor().stream_reader(raw) as reader:
        yield reader


class TarballNodeBootstrapper:
    """Fills an empty node data directory from a ``.tar.zst`` archive."""

    def __init__(self, url: str, data_dir: str | os.PathLike[str]) -> None:
        self.url = url
        self.data_dir = os.fspath(data_dir)

    def bootstrap(self) -> None:
        if is_bootstrapped(self.data_dir):
            return

        logger.info("bootstrapping native node chain data from pre-built archive %s", self.url)
        with contextlib.ExitStack() as stack:
            try:
                reader = stack.enter_context(_open_object(self.url))
            except OSError as err:
                raise OSError(f"cannot get snapshot from store: {err}") from err
            self.create_chain_data(reader)

    def create_chain_data(self, reader: BinaryIO) -> None:
        """Extract an uncompressed tar stream into the data directory as is."""
        try:
            os.makedirs(self.data_dir, exist_ok=True)
        except OSError as err:
            raise OSError(f"unable to create blocks log file: {err}") from err

        logger.info("extracting bootstrapping data into node data directory %s", self.data_dir)
        with tarfile.open(fileobj=reader, mode="r|") as archive:
            for member in archive:
                path = os.path.join(self.data_dir, member.name.lstrip("/"))
                logger.debug("about to write entry %s to %s (dir: %s)", member.name, path, member.isdir())
                if member.isdir():
                    try:
                        os.makedirs(path, exist_ok=True)
                    except OSError as err:
                        raise OSError(f"unable to create directory: {err}") from err
                    continue

                try:
                    handle = open(path, "wb")
                except OSError as err:
                    raise OSError(f"unable to create file: {err}") from err
                with handle:
                    source = archive.extractfile(member)
                    if source is not None:
                        shutil.copyfileobj(source, handle)