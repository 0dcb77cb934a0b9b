"""Shared PIBUS definitions: acknowledge codes, opcodes, segment table and
the request/response records exchanged between the bus and its targets."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator

ADDRESS_MASK = 0xFFFFFFFF


class ConfigurationError(ValueError):
    """A component was built with parameters it cannot work with."""


class Ack(IntEnum):
    """Values driven on the PIBUS ACK lines by a target."""

    WAIT = 0
    ERROR = 1
    READY = 2
    RETRY = 3


class Opcode(IntEnum):
    """Values of the PIBUS OPC field."""

    NOP = 0x0
    WDU = 0x1
    WD2 = 0x2
    WD4 = 0x3
    WD8 = 0x4
    WD16 = 0x5
    WD32 = 0x6
    HW0 = 0x8
    HW1 = 0x9
    BY0 = 0xA
    BY1 = 0xB
    BY2 = 0xC
    BY3 = 0xD


@dataclass(frozen=True)
class Segment:
    """A contiguous region of the address space owned by one target."""

    name: str
    base: int
    size: int
    target: int
    cached: bool = False

    @property
    def end(self) -> int:
        return self.base + self.size

    def contains(self, address: int) -> bool:
        """True when ``address`` falls inside the segment."""
        return self.base <= address < self.end


@dataclass
class SegmentTable:
    """The mapping of the address space onto targets.

    Targets are selected by decoding the ``msb_bits`` most significant
    address bits; addresses that decode to no segment go to
    ``default_target``.
    """

    msb_bits: int = 8
    default_target: int = 0
    _segments: list[Segment] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        if not 1 <= self.msb_bits <= 32:
            raise ConfigurationError("the number of decoded MSB bits must be between 1 and 32")
        if self.default_target < 0:
            raise ConfigurationError("the default target index cannot be negative")

    @property
    def msb_shift(self) -> int:
        return 32 - self.msb_bits

    def __iter__(self) -> Iterator[Segment]:
        return iter(self._segments)

    def __len__(self) -> int:
        return len(self._segments)

    def add(self, name, base, size, target, cached=False) -> Segment:
        """Register a new segment and return it."""
        if size <= 0:
            raise ConfigurationError(f"segment {name}: size must be positive")
        if base < 0 or base + size > ADDRESS_MASK + 1:
            raise ConfigurationError(f"segment {name}: outside the 32-bit address space")
        if target < 0:
            raise ConfigurationError(f"segment {name}: target index cannot be negative")
        segment = Segment(name, base, size, target, bool(cached))
        self._segments.append(segment)
        return segment

    def segments_for(self, target) -> list[Segment]:
        """The segments of one target, in the order they were added."""
        return [seg for seg in self._segments if seg.target == target]

    def _decode(self, address: int) -> Segment | None:
        shift = self.msb_shift
        index = (address & ADDRESS_MASK) >> shift
        for seg in self._segments:
            if seg.base >> shift <= index <= (seg.end - 1) >> shift:
                return seg
        return None

    def target_of(self, address) -> int:
        """The target index selected by the MSB bits of ``address``."""
        seg = self._decode(address)
        return self.default_target if seg is None else seg.target

    def is_cached(self, address) -> bool:
        """True when ``address`` decodes to a cacheable segment."""
        seg = self._decode(address)
        return seg is not None and seg.cached

    def all_below(self, count) -> bool:
        """True when every target index is smaller than ``count``."""
        return self.default_target < count and all(seg.target < count for seg in self._segments)


@dataclass(frozen=True)
class TargetRequest:
    """Bus signals seen by a target during one cycle."""

    sel: bool = False
    address: int = 0
    read: bool = True
    opc: int = Opcode.WDU
    data: int = 0
    tout: bool = False


@dataclass(frozen=True)
class TargetResponse:
    """Signals driven by a target; ``None`` means the line is not driven."""

    ack: Ack | None = None
    data: int | None = None