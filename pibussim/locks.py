"""PIBUS target providing binary locks: a read is test-and-set, a write clears."""

from __future__ import annotations

import logging
from enum import IntEnum

from pibussim.bus import (
    ADDRESS_MASK,
    Ack,
    ConfigurationError,
    SegmentTable,
    TargetRequest,
    TargetResponse,
)

log = logging.getLogger(__name__)


class LockState(IntEnum):
    IDLE = 0
    READ = 1
    WRITE = 2
    ERROR = 3


class LockBank:
    """A bank of binary locks, each occupying one 32-bit word.

    Reading a lock returns its previous value and sets it; writing
    resets it. Out-of-segment accesses are answered with an error, so
    the bank can serve as the default target.
    """

    def __init__(self, table: SegmentTable, target, nlocks, name="locks"):
        segments = table.segments_for(target)
        if not segments:
            raise ConfigurationError(f"{name}: no segment for target {target}")
        segment = segments[0]
        if segment.base & 0x3:
            raise ConfigurationError(f"{name}: the segment base address must be word aligned")
        if segment.size < nlocks * 4:
            raise ConfigurationError(f"{name}: the segment size must be at least 4 * nlocks")
        self.name = name
        self.target = target
        self.segment = segment
        self.nlocks = nlocks
        log.info("lock bank %s: %d locks, segment %s base 0x%x size 0x%x",
                 name, nlocks, segment.name, segment.base, segment.size)
        self.reset()

    def reset(self):
        """Return to IDLE and release every lock."""
        self.state = LockState.IDLE
        self.index = 0
        self.locks = [False] * self.nlocks

    def transition(self, request: TargetRequest):
        """Advance one clock cycle."""
        if self.state is LockState.IDLE:
            if request.sel:
                address = request.address & ADDRESS_MASK & 0xFFFFFFFC
                index = (address - self.segment.base) >> 2
                if self.segment.contains(address) and index < self.nlocks:
                    self.index = index
                    self.state = LockState.READ if request.read else LockState.WRITE
                else:
                    self.state = LockState.ERROR
        elif self.state is LockState.READ:
            self.locks[self.index] = True
            self.state = LockState.IDLE
        elif self.state is LockState.WRITE:
            self.locks[self.index] = False
            self.state = LockState.IDLE
        else:
            self.state = LockState.IDLE

    def moore(self) -> TargetResponse:
        """The ACK and DATA lines driven in the current state."""
        if self.state is LockState.READ:
            return TargetResponse(Ack.READY, int(self.locks[self.index]))
        if self.state is LockState.WRITE:
            return TargetResponse(Ack.READY)
        if self.state is LockState.ERROR:
            return TargetResponse(Ack.ERROR)
        return TargetResponse()

    def trace(self) -> str:
        return f"{self.name} : {self.state.name}"