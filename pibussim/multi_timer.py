"""PIBUS target holding up to 32 independent software-controlled timers."""

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

MAX_TIMERS = 32

VALUE_ADDRESS = 0
RUNNING_ADDRESS = 4
PERIOD_ADDRESS = 8
IRQ_ADDRESS = 12


class TimerState(IntEnum):
    IDLE = 0
    READ = 1
    WRITE = 2
    ERROR = 3


class MultiTimer:
    """A set of timers, each exposing four 32-bit registers.

    Timer ``i`` is selected by address bits [8:4]; bits [3:2] select the
    register: VALUE (0x0), RUNNING (0x4), PERIOD (0x8) and IRQ (0xC).
    VALUE is incremented every cycle. While RUNNING is true the hidden
    counter counts down and reloads from PERIOD, raising IRQ, when it
    reaches zero. Out-of-segment accesses are answered with an error.

    Registers are updated as clocked registers: every next value is
    computed from the values of the previous cycle, and the free-running
    update of a timer takes precedence over a bus write in the same cycle.
    """

    def __init__(self, table: SegmentTable, target, ntimer, name="timer"):
        segments = table.segments_for(target)
        if not segments:
            raise ConfigurationError(f"{name}: no segment for target {target}")
        segment = segments[0]
        if not 1 <= ntimer <= MAX_TIMERS:
            raise ConfigurationError(
                f"{name}: the number of timers must be between 1 and {MAX_TIMERS}"
            )
        if segment.base & 0xF:
            raise ConfigurationError(f"{name}: the base address must be a multiple of 16")
        if segment.size < ntimer << 4:
            raise ConfigurationError(f"{name}: the segment size must be at least 16*ntimer bytes")
        self.name = name
        self.target = target
        self.segment = segment
        self.ntimer = ntimer
        self.value = [0] * ntimer
        self.period = [0] * ntimer
        self.counter = [0] * ntimer
        self.running = [False] * ntimer
        self.irq = [False] * ntimer
        log.info("multi timer %s: %d timers, segment %s base 0x%x size 0x%x",
                 name, ntimer, segment.name, segment.base, segment.size)
        self.reset()

    def reset(self):
        """Return to IDLE, stop every timer and clear every interrupt."""
        self.state = TimerState.IDLE
        self.index = 0
        self.cell = VALUE_ADDRESS
        self.running = [False] * self.ntimer
        self.irq = [False] * self.ntimer

    def transition(self, request: TargetRequest):
        """Advance one clock cycle."""
        value = list(self.value)
        period = list(self.period)
        counter = list(self.counter)
        running = list(self.running)
        irq = list(self.irq)

        if self.state is TimerState.IDLE:
            if request.sel:
                address = request.address & ADDRESS_MASK & 0xFFFFFFFC
                offset = address - self.segment.base
                index = (offset & 0x1F0) >> 4
                if not self.segment.contains(address) or index >= self.ntimer:
                    self.state = TimerState.ERROR
                else:
                    self.cell = offset & 0xC
                    self.index = index
                    self.state = TimerState.READ if request.read else TimerState.WRITE
        elif self.state is TimerState.WRITE:
            data = request.data & ADDRESS_MASK
            k = self.index
            if self.cell == VALUE_ADDRESS:
                value[k] = data
            elif self.cell == IRQ_ADDRESS:
                irq[k] = data != 0
            elif self.cell == RUNNING_ADDRESS:
                running[k] = data != 0
            elif self.cell == PERIOD_ADDRESS:
                period[k] = data
                counter[k] = data
                running[k] = False
            self.state = TimerState.IDLE
        else:
            self.state = TimerState.IDLE

        for k in range(self.ntimer):
            value[k] = (self.value[k] + 1) & ADDRESS_MASK
            if self.running[k]:
                if self.counter[k] > 0:
                    counter[k] = self.counter[k] - 1
                else:
                    counter[k] = self.period[k]
                    irq[k] = True

        self.value, self.period, self.counter = value, period, counter
        self.running, self.irq = running, irq

    def _register(self) -> int:
        k = self.index
        if self.cell == VALUE_ADDRESS:
            return self.value[k]
        if self.cell == PERIOD_ADDRESS:
            return self.period[k]
        if self.cell == RUNNING_ADDRESS:
            return int(self.running[k])
        return int(self.irq[k])

    def moore(self) -> TargetResponse:
        """The ACK and DATA lines driven in the current state."""
        if self.state is TimerState.READ:
            return TargetResponse(Ack.READY, self._register())
        if self.state is TimerState.WRITE:
            return TargetResponse(Ack.READY)
        if self.state is TimerState.ERROR:
            return TargetResponse(Ack.ERROR)
        return TargetResponse()

    def irqs(self) -> list[bool]:
        """The IRQ lines: raised while a timer is running with its IRQ set."""
        return [flag and run for flag, run in zip(self.irq, self.running)]

    def trace(self) -> str:
        return (
            f"{self.name} : {self.state.name}"
            f"   period[0] = {self.period[0]}"
            f"   running[0] = {int(self.running[0])}"
        )