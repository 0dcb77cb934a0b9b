"""Register map and state encodings of the multi-channel PIBUS DMA controller."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from pibussim.bus import Ack, TargetResponse

MAX_CHANNELS = 16
MAX_BURST = 1024
CHANNEL_SPAN_WORDS = 8


class ChannelState(IntEnum):
    """State of one DMA channel; it is also the value read from STATUS."""

    DONE = 0
    READ_ERROR = 1
    IDLE = 2
    WRITE_ERROR = 3
    READ_REQ = 4
    READ_WAIT = 5
    WRITE_REQ = 6
    WRITE_WAIT = 7

    @property
    def completed(self) -> bool:
        """True for the states in which the channel raises its IRQ."""
        return self in (ChannelState.DONE, ChannelState.READ_ERROR, ChannelState.WRITE_ERROR)


class MasterState(IntEnum):
    IDLE = 0
    READ_REQ = 1
    READ_AD = 2
    READ_DTAD = 3
    READ_DT = 4
    WRITE_REQ = 5
    WRITE_AD = 6
    WRITE_DTAD = 7
    WRITE_DT = 8


class DmaTargetState(IntEnum):
    IDLE = 0
    WRITE_SOURCE = 1
    WRITE_DEST = 2
    WRITE_LENGTH = 3
    WRITE_RESET = 4
    WRITE_NOIRQ = 5
    READ_SOURCE = 6
    READ_DEST = 7
    READ_STATUS = 8
    READ_NOIRQ = 9
    ERROR = 10


class DmaRegister(IntEnum):
    """Word index of each memory-mapped register of a channel."""

    SRC = 0
    DST = 1
    LEN = 2
    RST = 3
    IRQ = 4

    @classmethod
    def decode(cls, address, read) -> DmaTargetState:
        """The target state selected by an access; only the 5 low bits are decoded."""
        offset = address & 0x1F
        if offset & 0x3:
            return DmaTargetState.ERROR
        try:
            register = cls(offset >> 2)
        except ValueError:
            return DmaTargetState.ERROR
        table = _READ_STATES if read else _WRITE_STATES
        return table.get(register, DmaTargetState.ERROR)


_WRITE_STATES = {
    DmaRegister.SRC: DmaTargetState.WRITE_SOURCE,
    DmaRegister.DST: DmaTargetState.WRITE_DEST,
    DmaRegister.LEN: DmaTargetState.WRITE_LENGTH,
    DmaRegister.RST: DmaTargetState.WRITE_RESET,
    DmaRegister.IRQ: DmaTargetState.WRITE_NOIRQ,
}

_READ_STATES = {
    DmaRegister.SRC: DmaTargetState.READ_SOURCE,
    DmaRegister.DST: DmaTargetState.READ_DEST,
    DmaRegister.LEN: DmaTargetState.READ_STATUS,
    DmaRegister.IRQ: DmaTargetState.READ_NOIRQ,
}


@dataclass(frozen=True)
class DmaOutputs:
    """Lines driven by the DMA controller during one cycle.

    ``None`` means the line is not driven in that cycle.
    """

    ack: Ack | None = None
    data: int | None = None
    req: bool = False
    address: int | None = None
    read: bool | None = None
    opc: int | None = None
    lock: bool | None = None
    irq: tuple[bool, ...] = ()

    @property
    def target_response(self) -> TargetResponse:
        """The ACK and DATA lines seen as a target response."""
        return TargetResponse(self.ack, self.data)