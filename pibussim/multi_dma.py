"""Multi-channel PIBUS DMA controller, acting both as bus master and target."""

from __future__ import annotations

import logging
from typing import Optional

from pibussim.bus import (
    ADDRESS_MASK,
    Ack,
    ConfigurationError,
    Opcode,
    SegmentTable,
    TargetRequest,
)
from pibussim.dma_registers import (
    MAX_BURST,
    MAX_CHANNELS,
    ChannelState,
    DmaOutputs,
    DmaRegister,
    DmaTargetState,
    MasterState,
)

log = logging.getLogger(__name__)

_REQUEST_STATES = (ChannelState.READ_REQ, ChannelState.WRITE_REQ)


class MultiDma:
    """A DMA controller with up to 16 channels sharing one bus master port.

    Channel ``k`` is selected by address bits [8:5] and exposes the
    SOURCE, DEST, LENGTH/STATUS, RESET and NOIRQ registers. Writing
    LENGTH starts a transfer; reading it returns the channel state.
    Channels are served round-robin, one burst of at most ``burst``
    words at a time. Registers are clocked: every cycle works from the
    values of the previous cycle.
    """

    def __init__(self, table: SegmentTable, target, burst, channels, name="dma"):
        if not 1 <= channels <= MAX_CHANNELS:
            raise ConfigurationError(
                f"{name}: number of channels must be larger than 0 and no larger than {MAX_CHANNELS}"
            )
        if not 1 <= burst <= MAX_BURST:
            raise ConfigurationError(
                f"{name}: burst must be larger than 0 and no larger than {MAX_BURST} words"
            )
        segments = table.segments_for(target)
        if not segments:
            raise ConfigurationError(f"{name}: no segment for target {target}")
        segment = segments[0]
        if segment.size < channels * 4096:
            raise ConfigurationError(
                f"{name}: the size of the segment cannot be smaller than 4K*channels"
            )
        if segment.base & 0x3FF:
            raise ConfigurationError(f"{name}: the base address of the segment is misaligned")
        self.name = name
        self.target = target
        self.segment = segment
        self.burst = burst
        self.channels = channels

        self.target_index = 0
        self.master_index = 0
        self.master_count = 0
        self.master_burst = 0
        self.source = [0] * channels
        self.dest = [0] * channels
        self.length = [0] * channels
        # A burst of n words lands in slots 1..n of the channel buffer.
        self.buffers = [[0] * (burst + 1) for _ in range(channels)]
        log.info("multi dma %s: burst %d, %d channels, segment %s base 0x%x size 0x%x",
                 name, burst, channels, segment.name, segment.base, segment.size)
        self.reset()

    def reset(self):
        """Return every FSM to IDLE and clear the channel control flags."""
        self.master_state = MasterState.IDLE
        self.target_state = DmaTargetState.IDLE
        self.channel_state = [ChannelState.IDLE] * self.channels
        self.active = [False] * self.channels
        self.done = [False] * self.channels
        self.error = [False] * self.channels
        self.noirq = [False] * self.channels

    def _store(self, channel: int, word: int, value: int) -> None:
        buffer = self.buffers[channel]
        if word < len(buffer):
            buffer[word] = value & ADDRESS_MASK

    def _load(self, channel: int, word: int) -> int:
        buffer = self.buffers[channel]
        return buffer[word] if word < len(buffer) else 0

    def _last_word(self) -> int:
        return (self.master_burst - 1) & ADDRESS_MASK

    def transition(self, request: TargetRequest, gnt=False, ack=Ack.WAIT, data=0):
        """Advance one clock cycle.

        ``request`` holds the target-side signals, ``gnt`` the grant
        line, ``ack`` and ``data`` the response to the master port.
        """
        source = list(self.source)
        dest = list(self.dest)
        length = list(self.length)
        active = list(self.active)
        done = list(self.done)
        error = list(self.error)
        noirq = list(self.noirq)
        channel_state = list(self.channel_state)
        target_state = self.target_state
        target_index = self.target_index
        master_state = self.master_state
        master_index = self.master_index
        master_count = self.master_count
        master_burst = self.master_burst
        data = data & ADDRESS_MASK

        # Target FSM
        tgt = self.target_state
        k = self.target_index
        bus_data = request.data & ADDRESS_MASK
        if tgt is DmaTargetState.IDLE:
            if request.sel:
                address = request.address & ADDRESS_MASK
                target_index = (address >> 5) & 0xF
                if not self.segment.contains(address) or target_index >= self.channels:
                    target_state = DmaTargetState.ERROR
                else:
                    target_state = DmaRegister.decode(address, request.read)
        elif tgt is DmaTargetState.WRITE_SOURCE:
            if self.channel_state[k] is ChannelState.IDLE:
                if bus_data & 0x3:
                    raise ValueError(f"{self.name}: the source buffer base address must be word aligned")
                source[k] = bus_data
            target_state = DmaTargetState.IDLE
        elif tgt is DmaTargetState.WRITE_DEST:
            if self.channel_state[k] is ChannelState.IDLE:
                if bus_data & 0x3:
                    raise ValueError(
                        f"{self.name}: the destination buffer base address must be word aligned"
                    )
                dest[k] = bus_data
            target_state = DmaTargetState.IDLE
        elif tgt is DmaTargetState.WRITE_LENGTH:
            if self.channel_state[k] is ChannelState.IDLE:
                if bus_data & 0x3:
                    raise ValueError(f"{self.name}: the transfer length must be multiple of 4 bytes")
                length[k] = bus_data
                active[k] = True
            target_state = DmaTargetState.IDLE
        elif tgt is DmaTargetState.WRITE_RESET:
            active[k] = False
            target_state = DmaTargetState.IDLE
        elif tgt is DmaTargetState.WRITE_NOIRQ:
            noirq[k] = bool(bus_data)
            target_state = DmaTargetState.IDLE
        else:
            target_state = DmaTargetState.IDLE

        # Master FSM
        mst = self.master_state
        m = self.master_index
        if mst is MasterState.IDLE:
            for step in range(self.channels):
                candidate = (self.master_index + step) % self.channels
                state = self.channel_state[candidate]
                if state in _REQUEST_STATES:
                    master_index = candidate
                    master_count = 0
                    master_burst = min(self.length[candidate] >> 2, self.burst)
                    master_state = (MasterState.READ_REQ if state is ChannelState.READ_REQ
                                    else MasterState.WRITE_REQ)
                    break
        elif mst is MasterState.READ_REQ:
            if gnt:
                master_state = MasterState.READ_AD
        elif mst is MasterState.READ_AD:
            master_state = MasterState.READ_DT if self.master_burst == 1 else MasterState.READ_DTAD
            master_count = (self.master_count + 1) & ADDRESS_MASK
            source[m] = (self.source[m] + 4) & ADDRESS_MASK
        elif mst is MasterState.READ_DTAD:
            if ack != Ack.WAIT:
                self._store(m, self.master_count, data)
                master_count = (self.master_count + 1) & ADDRESS_MASK
                source[m] = (self.source[m] + 4) & ADDRESS_MASK
                if self.master_count == self._last_word():
                    master_state = MasterState.READ_DT
        elif mst is MasterState.READ_DT:
            if ack == Ack.READY:
                self._store(m, self.master_count, data)
                done[m], error[m] = True, False
                master_state = MasterState.IDLE
            elif ack == Ack.ERROR:
                done[m], error[m] = True, True
                master_state = MasterState.IDLE
        elif mst is MasterState.WRITE_REQ:
            if gnt:
                master_state = MasterState.WRITE_AD
        elif mst is MasterState.WRITE_AD:
            master_state = MasterState.WRITE_DT if self.master_burst == 1 else MasterState.WRITE_DTAD
            master_count = (self.master_count + 1) & ADDRESS_MASK
            dest[m] = (self.dest[m] + 4) & ADDRESS_MASK
            length[m] = (self.length[m] - 4) & ADDRESS_MASK
        elif mst is MasterState.WRITE_DTAD:
            if ack != Ack.WAIT:
                master_count = (self.master_count + 1) & ADDRESS_MASK
                dest[m] = (self.dest[m] + 4) & ADDRESS_MASK
                length[m] = (self.length[m] - 4) & ADDRESS_MASK
                if self.master_count == self._last_word():
                    master_state = MasterState.WRITE_DT
        elif mst is MasterState.WRITE_DT:
            if ack == Ack.READY:
                done[m], error[m] = True, False
                master_state = MasterState.IDLE
            elif ack == Ack.ERROR:
                done[m], error[m] = True, True
                master_state = MasterState.IDLE

        # Channel FSMs
        for k, state in enumerate(self.channel_state):
            if state is ChannelState.IDLE:
                if self.active[k]:
                    channel_state[k] = ChannelState.READ_REQ
            elif state is ChannelState.READ_REQ:
                if self.master_state is MasterState.READ_REQ and self.master_index == k:
                    channel_state[k] = ChannelState.READ_WAIT
            elif state is ChannelState.READ_WAIT:
                if self.done[k]:
                    if not self.active[k]:
                        channel_state[k] = ChannelState.IDLE
                    elif self.error[k]:
                        channel_state[k] = ChannelState.READ_ERROR
                    else:
                        channel_state[k] = ChannelState.WRITE_REQ
                    done[k] = False
            elif state is ChannelState.WRITE_REQ:
                if self.master_state is MasterState.WRITE_REQ and self.master_index == k:
                    channel_state[k] = ChannelState.WRITE_WAIT
            elif state is ChannelState.WRITE_WAIT:
                if self.done[k]:
                    if not self.active[k]:
                        channel_state[k] = ChannelState.IDLE
                    elif self.error[k]:
                        channel_state[k] = ChannelState.WRITE_ERROR
                    elif self.length[k] == 0:
                        channel_state[k] = ChannelState.DONE
                    else:
                        channel_state[k] = ChannelState.READ_REQ
                    done[k] = False
            elif not self.active[k]:
                channel_state[k] = ChannelState.IDLE

        self.source, self.dest, self.length = source, dest, length
        self.active, self.done, self.error, self.noirq = active, done, error, noirq
        self.channel_state = channel_state
        self.target_state, self.target_index = target_state, target_index
        self.master_state, self.master_index = master_state, master_index
        self.master_count, self.master_burst = master_count, master_burst

    def moore(self) -> DmaOutputs:
        """The lines driven in the current state."""
        tk = self.target_index
        tgt = self.target_state
        ack: Optional[Ack] = None
        out_data: Optional[int] = None
        if tgt is DmaTargetState.READ_STATUS:
            ack, out_data = Ack.READY, int(self.channel_state[tk])
        elif tgt is DmaTargetState.READ_SOURCE:
            ack, out_data = Ack.READY, self.source[tk]
        elif tgt is DmaTargetState.READ_DEST:
            ack, out_data = Ack.READY, self.dest[tk]
        elif tgt is DmaTargetState.READ_NOIRQ:
            ack, out_data = Ack.READY, int(self.noirq[tk])
        elif tgt is DmaTargetState.ERROR:
            ack = Ack.ERROR
        elif tgt is not DmaTargetState.IDLE:
            ack = Ack.READY

        mst = self.master_state
        mk = self.master_index
        req = mst in (MasterState.READ_REQ, MasterState.WRITE_REQ)
        address = read = opc = lock = None
        if mst in (MasterState.READ_AD, MasterState.READ_DTAD):
            address, read = self.source[mk], True
        elif mst in (MasterState.WRITE_AD, MasterState.WRITE_DTAD):
            address, read = self.dest[mk], False
        if address is not None:
            opc = int(Opcode.WDU)
            lock = self.master_count != self._last_word()
        if mst in (MasterState.WRITE_DTAD, MasterState.WRITE_DT):
            out_data = self._load(mk, self.master_count)

        return DmaOutputs(
            ack=ack,
            data=out_data,
            req=req,
            address=address,
            read=read,
            opc=opc,
            lock=lock,
            irq=tuple(self.irqs()),
        )

    def irqs(self) -> list[bool]:
        """IRQ lines: raised when a transfer has completed and IRQs are enabled."""
        return [state.completed and not masked
                for state, masked in zip(self.channel_state, self.noirq)]

    def trace(self) -> str:
        """The target and master states, and one line per active channel."""
        lines = [
            f"{self.name}_target : {self.target_state.name} / "
            f"{self.name}_master : {self.master_state.name} for channel {self.master_index}"
        ]
        for k in range(self.channels):
            if self.active[k]:
                lines.append(
                    f"{self.name}_channel {k} : {self.channel_state[k].name}"
                    f" / source = {self.source[k]:x}"
                    f" / dest = {self.dest[k]:x}"
                    f" / nwords = {self.length[k]}"
                )
        return "\n".join(lines)