"""Multi-segment PIBUS SRAM target with configurable latency."""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Callable, Optional

from pibussim.bus import (
    ADDRESS_MASK,
    Ack,
    ConfigurationError,
    Opcode,
    Segment,
    SegmentTable,
    TargetRequest,
    TargetResponse,
)

log = logging.getLogger(__name__)

MAX_SEGMENTS = 16

Loader = Callable[[int, int], bytes]

_WRITE_MASKS = {
    Opcode.BY0: 0x000000FF,
    Opcode.BY1: 0x0000FF00,
    Opcode.BY2: 0x00FF0000,
    Opcode.BY3: 0xFF000000,
    Opcode.HW0: 0x0000FFFF,
    Opcode.HW1: 0xFFFF0000,
    Opcode.WDU: 0xFFFFFFFF,
    Opcode.NOP: 0x00000000,
}


def merge_write(word, data, opc) -> int:
    """Merge ``data`` into ``word`` as a write with opcode ``opc`` would.

    The memory is little endian: byte 0 is the least significant byte.
    """
    try:
        mask = _WRITE_MASKS[Opcode(opc)]
    except (ValueError, KeyError):
        raise ValueError(
            f"illegal value of the PIBUS OPC field for a WRITE : {opc:#x} "
            "(supported: BY0/BY1/BY2/BY3/HW0/HW1/WDU/NOP)"
        ) from None
    return ((word & ~mask) | (data & mask)) & ADDRESS_MASK


class RamState(IntEnum):
    IDLE = 0
    READ_WAIT = 1
    READ_OK = 2
    WRITE_WAIT = 3
    WRITE_OK = 4
    ERROR = 5


class SimpleRam:
    """An SRAM made of up to 16 segments, each a table of 32-bit words.

    ``latency`` wait cycles are inserted at the start of each
    transaction. A burst must stay inside one segment and must not mix
    reads and writes. An optional ``loader`` is called at reset with
    ``(base, size)`` for each segment and returns its initial content as
    little-endian bytes.
    """

    def __init__(self, table: SegmentTable, target, latency, loader: Optional[Loader] = None,
                 name="ram"):
        segments = table.segments_for(target)
        if len(segments) > MAX_SEGMENTS:
            raise ConfigurationError(
                f"{name}: the number of segments cannot be larger than {MAX_SEGMENTS}"
            )
        for seg in segments:
            if seg.base & 0x3:
                raise ConfigurationError(f"{name}: the segment base address must be word aligned")
            if seg.size & 0x3:
                raise ConfigurationError(f"{name}: the segment size must be a multiple of 4")
        if latency < 0:
            raise ConfigurationError(f"{name}: latency cannot be negative")
        self.name = name
        self.target = target
        self.segments: list[Segment] = segments
        self.latency = latency
        self.loader = loader
        self.monitor: Optional[tuple[int, int]] = None
        log.info("simple ram %s: latency %d", name, latency)
        for seg in segments:
            log.info("    segment %s | base = 0x%x | size = 0x%x", seg.name, seg.base, seg.size)
        self.reset()

    def _initial_words(self, seg: Segment) -> list[int]:
        image = b"" if self.loader is None else bytes(self.loader(seg.base, seg.size))
        if len(image) > seg.size:
            raise ConfigurationError(
                f"{self.name}: loader returned {len(image)} bytes for segment {seg.name} "
                f"of size {seg.size}"
            )
        image = image.ljust(seg.size, b"\x00")
        return [int.from_bytes(image[pos:pos + 4], "little") for pos in range(0, seg.size, 4)]

    def reset(self):
        """Return to IDLE, stop monitoring and reload every segment."""
        self.monitor = None
        self.state = RamState.IDLE
        self.counter = 0
        self.index = 0
        self.address = 0
        self.opc = int(Opcode.WDU)
        self.memory = [self._initial_words(seg) for seg in self.segments]

    def _find(self, address: int) -> Optional[int]:
        return next(
            (pos for pos, seg in enumerate(self.segments) if seg.contains(address)),
            None,
        )

    def _burst_next(self, request: TargetRequest, read: bool) -> None:
        if not request.sel:
            self.state = RamState.IDLE
            return
        address = request.address & 0xFFFFFFFC
        if not self.segments[self.index].contains(address) or request.read != read:
            self.state = RamState.ERROR
        else:
            self.address = address

    def transition(self, request: TargetRequest):
        """Advance one clock cycle."""
        state = self.state
        if state is RamState.IDLE:
            if request.sel:
                address = request.address & 0xFFFFFFFC
                found = self._find(address)
                if found is None:
                    self.state = RamState.ERROR
                else:
                    self.index = found
                    self.address = address
                    self.opc = int(request.opc)
                    self.counter = self.latency
                    if request.read:
                        self.state = RamState.READ_WAIT if self.latency else RamState.READ_OK
                    else:
                        self.state = RamState.WRITE_WAIT if self.latency else RamState.WRITE_OK
        elif state is RamState.ERROR:
            self.state = RamState.IDLE
        elif state in (RamState.READ_WAIT, RamState.WRITE_WAIT):
            previous = self.counter
            self.counter -= 1
            if previous == 1:
                self.state = RamState.READ_OK if state is RamState.READ_WAIT else RamState.WRITE_OK
        elif state is RamState.READ_OK:
            self._burst_next(request, read=True)
        elif state is RamState.WRITE_OK:
            data = request.data & ADDRESS_MASK
            address = self.address
            word = (address - self.segments[self.index].base) >> 2
            if self.monitor is not None:
                base, length = self.monitor
                if base <= address < base + length:
                    log.info("RAM Change : address = %x / data = %x", address, data)
            bank = self.memory[self.index]
            bank[word] = merge_write(bank[word], data, self.opc)
            self._burst_next(request, read=False)

    def moore(self) -> TargetResponse:
        """The ACK and DATA lines driven in the current state."""
        if self.state is RamState.ERROR:
            return TargetResponse(Ack.ERROR)
        if self.state is RamState.READ_WAIT:
            return TargetResponse(Ack.WAIT, 0)
        if self.state is RamState.READ_OK:
            seg = self.segments[self.index]
            return TargetResponse(Ack.READY, self.memory[self.index][(self.address - seg.base) >> 2])
        if self.state is RamState.WRITE_WAIT:
            return TargetResponse(Ack.WAIT)
        if self.state is RamState.WRITE_OK:
            return TargetResponse(Ack.READY)
        return TargetResponse()

    def read_word(self, address) -> int:
        """The word stored at ``address``; ValueError when outside every segment."""
        found = self._find(address)
        if found is None:
            raise ValueError(f"{self.name}: address {address:#x} out of segment")
        return self.memory[found][(address - self.segments[found].base) >> 2]

    def trace(self, address=0) -> str:
        """The FSM state, or the word at ``address`` when it is non-zero."""
        if not address:
            return f"{self.name} : {self.state.name}"
        try:
            data = self.read_word(address)
        except ValueError:
            return "ERROR IN RAM : monitored address out of segment"
        return f"{self.name} : address = {address:x} data = {data:x}"

    def start_monitor(self, base, length):
        """Log every write landing in ``[base, base + length)``."""
        self.monitor = (base, length)

    def stop_monitor(self):
        self.monitor = None