"""Block model shared by the node manager, the reader and the stream services."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol, runtime_checkable

TYPE_URL_PREFIX = "type.googleapis.com/"


@dataclass(frozen=True)
class BlockRef:
    """A light reference to a block: its id and its number."""

    id: str
    num: int

    def __str__(self) -> str:
        return f"#{self.num} ({self.id})"


@dataclass
class Block:
    """The envelope in which every chain-specific block travels."""

    id: str
    number: int
    parent_id: str = ""
    parent_num: int = 0
    timestamp: datetime | None = None
    lib_num: int = 0
    payload_type_url: str = ""
    payload: bytes = b""

    def as_ref(self) -> BlockRef:
        return BlockRef(self.id, self.number)

    def __str__(self) -> str:
        return str(self.as_ref())


class ChainBlock(abc.ABC):
    """A chain-specific block that can be wrapped into a :class:`Block`.

    Implementations may also provide ``firehose_block_lib_num()`` when the
    last irreversible block number can be derived from the block itself.
    """

    @abc.abstractmethod
    def firehose_block_id(self) -> str:
        """Unique identifier of the block."""

    @abc.abstractmethod
    def firehose_block_number(self) -> int:
        """Height of the block."""

    @abc.abstractmethod
    def firehose_block_parent_id(self) -> str:
        """Identifier of the parent, empty for the genesis block."""

    @abc.abstractmethod
    def firehose_block_parent_number(self) -> int:
        """Height of the parent, 0 when there is none."""

    @abc.abstractmethod
    def firehose_block_time(self) -> datetime:
        """Consensus time at which the block was produced."""

    @abc.abstractmethod
    def firehose_type_name(self) -> str:
        """Fully qualified message name of the block type."""

    @abc.abstractmethod
    def serialize(self) -> bytes:
        """Binary encoding of the block."""


@dataclass
class BlockEnvelope(ChainBlock):
    """Wraps a chain block whose LIB number comes through a side channel."""

    block: ChainBlock
    lib_num: int

    def firehose_block_lib_num(self) -> int:
        return self.lib_num

    def firehose_block_id(self) -> str:
        return self.block.firehose_block_id()

    def firehose_block_number(self) -> int:
        return self.block.firehose_block_number()

    def firehose_block_parent_id(self) -> str:
        return self.block.firehose_block_parent_id()

    def firehose_block_parent_number(self) -> int:
        return self.block.firehose_block_parent_number()

    def firehose_block_time(self) -> datetime:
        return self.block.firehose_block_time()

    def firehose_type_name(self) -> str:
        return self.block.firehose_type_name()

    def serialize(self) -> bytes:
        return self.block.serialize()


def encode_block(block: ChainBlock) -> Block:
    """Wrap a chain block into the :class:`Block` envelope."""
    lib_num_getter = getattr(block, "firehose_block_lib_num", None)
    if not callable(lib_num_getter):
        raise TypeError(
            f"block {type(block).__name__} does not provide 'firehose_block_lib_num' which is mandatory, "
            "if you transmit the LIB number through a side channel, wrap your block with "
            "'BlockEnvelope(block=b, lib_num=<value>)' to send the LIB number to use for encoding"
        )

    return Block(
        id=block.firehose_block_id(),
        number=block.firehose_block_number(),
        parent_id=block.firehose_block_parent_id(),
        timestamp=block.firehose_block_time(),
        lib_num=lib_num_getter(),
        payload_type_url=TYPE_URL_PREFIX + block.firehose_type_name(),
        payload=block.serialize(),
    )


class ProductionState(enum.IntEnum):
    PRE = 0  # just before we produce, don't restart
    PRODUCING = 1
    POST = 2  # right after production
    STALE = 3  # we haven't produced for 12 minutes

    def __str__(self) -> str:
        return self.name.lower()


class ProductionEvent(enum.IntEnum):
    PRODUCED = 0
    RECEIVED = 1


class StartOption(str, enum.Enum):
    ENABLE_DEBUG_DEEPMIND = "enable-debug-firehose-logs"
    DISABLE_DEBUG_DEEPMIND = "disable-debug-firehose-logs"


@runtime_checkable
class DeepMindDebuggable(Protocol):
    def debug_deep_mind(self, enabled: bool) -> None: ...


HeadBlockUpdater = Callable[[Block], None]
OnBlockWritten = Callable[[Block], None]
ReaderNodeArgumentResolver = Callable[[str], str]