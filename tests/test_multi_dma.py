import pytest

from pibussim.bus import Ack, ConfigurationError, Opcode, SegmentTable, TargetRequest
from pibussim.dma_registers import ChannelState, DmaRegister
from pibussim.multi_dma import MultiDma

BASE = 0x40000000
IDLE_REQ = TargetRequest()


def make_dma(burst=4, channels=2, size=None, base=BASE):
    table = SegmentTable()
    table.add("dma", base, size if size is not None else channels * 4096, 0)
    return MultiDma(table, 0, burst, channels)


def reg_address(channel, reg):
    return BASE + channel * 32 + int(reg) * 4


def write_reg(dma, channel, reg, value):
    dma.transition(TargetRequest(sel=True, address=reg_address(channel, reg), read=False))
    response = dma.moore().target_response
    dma.transition(TargetRequest(data=value))
    return response


def read_reg(dma, channel, reg):
    dma.transition(TargetRequest(sel=True, address=reg_address(channel, reg), read=True))
    response = dma.moore().target_response
    dma.transition(IDLE_REQ)
    return response


class Memory:
    """A zero-latency memory answering the DMA master port."""

    def __init__(self, words=None, fail_reads=False, fail_writes=False):
        self.words = dict(words or {})
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.pending = None
        self.locks = []

    def cycle(self, dma):
        out = dma.moore()
        ack, data = Ack.WAIT, 0
        if self.pending is not None:
            address, read = self.pending
            if read:
                if self.fail_reads:
                    ack = Ack.ERROR
                else:
                    ack, data = Ack.READY, self.words.get(address, 0)
            elif self.fail_writes:
                ack = Ack.ERROR
            else:
                self.words[address] = out.data
                ack = Ack.READY
        if out.address is None:
            self.pending = None
        else:
            self.pending = (out.address, out.read)
            self.locks.append(out.lock)
        dma.transition(IDLE_REQ, out.req, ack, data)

    def run_until_irq(self, dma, channel, limit=2000):
        for _ in range(limit):
            self.cycle(dma)
            if dma.irqs()[channel]:
                return
        raise AssertionError("transfer did not complete")


def start(dma, channel, src, dst, nbytes):
    write_reg(dma, channel, DmaRegister.SRC, src)
    write_reg(dma, channel, DmaRegister.DST, dst)
    write_reg(dma, channel, DmaRegister.LEN, nbytes)


def source_words(src, count):
    return {src + 4 * i: 0xA0000000 | i for i in range(count)}


def test_transfer_copies_words():
    dma = make_dma(burst=4)
    words = source_words(0x1000, 6)
    mem = Memory(words)
    start(dma, 0, 0x1000, 0x2000, 24)
    mem.run_until_irq(dma, 0)
    for i in range(6):
        assert mem.words[0x2000 + 4 * i] == words[0x1000 + 4 * i]
    status = read_reg(dma, 0, DmaRegister.LEN)
    assert status.ack == Ack.READY
    assert status.data == int(ChannelState.DONE)


def test_single_word_bursts():
    dma = make_dma(burst=1)
    words = source_words(0x3000, 3)
    mem = Memory(words)
    start(dma, 1, 0x3000, 0x5000, 12)
    mem.run_until_irq(dma, 1)
    assert [mem.words[0x5000 + 4 * i] for i in range(3)] == [words[0x3000 + 4 * i] for i in range(3)]
    assert dma.irqs() == [False, True]


def test_lock_released_on_last_word_of_burst():
    dma = make_dma(burst=4)
    mem = Memory(source_words(0x1000, 4))
    start(dma, 0, 0x1000, 0x2000, 16)
    mem.run_until_irq(dma, 0)
    assert mem.locks[:4] == [True, True, True, False]
    assert mem.locks[4:] == [True, True, True, False]


def test_master_outputs_use_wdu():
    dma = make_dma()
    start(dma, 0, 0x1000, 0x2000, 8)
    seen = []
    mem = Memory(source_words(0x1000, 2))
    for _ in range(40):
        out = dma.moore()
        if out.address is not None:
            seen.append(out.opc)
        mem.cycle(dma)
    assert seen and all(opc == Opcode.WDU for opc in seen)


def test_status_while_running_is_above_idle():
    dma = make_dma()
    start(dma, 0, 0x1000, 0x2000, 16)
    mem = Memory(source_words(0x1000, 4))
    mem.cycle(dma)
    assert dma.channel_state[0] > ChannelState.WRITE_ERROR


def test_reset_register_acknowledges_irq():
    dma = make_dma()
    mem = Memory(source_words(0x1000, 2))
    start(dma, 0, 0x1000, 0x2000, 8)
    mem.run_until_irq(dma, 0)
    write_reg(dma, 0, DmaRegister.RST, 0)
    dma.transition(IDLE_REQ)
    assert dma.channel_state[0] is ChannelState.IDLE
    assert dma.irqs() == [False, False]


def test_noirq_masks_interrupt():
    dma = make_dma()
    write_reg(dma, 0, DmaRegister.IRQ, 1)
    assert read_reg(dma, 0, DmaRegister.IRQ).data == 1
    mem = Memory(source_words(0x1000, 2))
    start(dma, 0, 0x1000, 0x2000, 8)
    for _ in range(100):
        mem.cycle(dma)
    assert dma.channel_state[0] is ChannelState.DONE
    assert dma.irqs()[0] is False


def test_read_error_reported():
    dma = make_dma()
    mem = Memory(source_words(0x1000, 4), fail_reads=True)
    start(dma, 0, 0x1000, 0x2000, 16)
    mem.run_until_irq(dma, 0)
    assert read_reg(dma, 0, DmaRegister.LEN).data == int(ChannelState.READ_ERROR)
    assert 0x2000 not in mem.words


def test_write_error_reported():
    dma = make_dma()
    mem = Memory(source_words(0x1000, 4), fail_writes=True)
    start(dma, 0, 0x1000, 0x2000, 16)
    mem.run_until_irq(dma, 0)
    assert read_reg(dma, 0, DmaRegister.LEN).data == int(ChannelState.WRITE_ERROR)


def test_source_and_dest_read_back():
    dma = make_dma()
    write_reg(dma, 1, DmaRegister.SRC, 0x1234)
    write_reg(dma, 1, DmaRegister.DST, 0x5678)
    assert read_reg(dma, 1, DmaRegister.SRC).data == 0x1234
    assert read_reg(dma, 1, DmaRegister.DST).data == 0x5678
    assert read_reg(dma, 0, DmaRegister.SRC).data == 0


def test_two_channels_both_complete():
    dma = make_dma(burst=2)
    first = source_words(0x1000, 4)
    second = {0x8000 + 4 * i: 0xB0000000 | i for i in range(4)}
    mem = Memory({**first, **second})
    start(dma, 0, 0x1000, 0x2000, 16)
    start(dma, 1, 0x8000, 0x9000, 16)
    for _ in range(500):
        mem.cycle(dma)
    assert dma.irqs() == [True, True]
    assert [mem.words[0x9000 + 4 * i] for i in range(4)] == [second[0x8000 + 4 * i] for i in range(4)]
    assert [mem.words[0x2000 + 4 * i] for i in range(4)] == [first[0x1000 + 4 * i] for i in range(4)]


def test_write_acknowledged_ready():
    dma = make_dma()
    response = write_reg(dma, 0, DmaRegister.SRC, 0x100)
    assert response.ack == Ack.READY


@pytest.mark.parametrize("reg", [DmaRegister.SRC, DmaRegister.DST, DmaRegister.LEN])
def test_misaligned_values_rejected(reg):
    dma = make_dma()
    with pytest.raises(ValueError):
        write_reg(dma, 0, reg, 0x1002)


def test_access_outside_segment_is_error():
    dma = make_dma(channels=2)
    dma.transition(TargetRequest(sel=True, address=BASE + 2 * 4096, read=True))
    assert dma.moore().ack == Ack.ERROR
    dma.transition(IDLE_REQ)
    assert dma.moore().ack is None


def test_channel_index_beyond_channels_is_error():
    dma = make_dma(channels=2)
    dma.transition(TargetRequest(sel=True, address=BASE + 5 * 32, read=True))
    assert dma.moore().ack == Ack.ERROR


def test_reset_register_not_readable():
    dma = make_dma()
    assert read_reg(dma, 0, DmaRegister.RST).ack == Ack.ERROR


@pytest.mark.parametrize(
    "kwargs",
    [
        {"channels": 0},
        {"channels": 17},
        {"burst": 0},
        {"burst": 1025},
        {"channels": 2, "size": 4096},
        {"base": BASE + 0x200},
    ],
)
def test_invalid_configuration(kwargs):
    with pytest.raises(ConfigurationError):
        make_dma(**kwargs)


def test_trace_lists_active_channels():
    dma = make_dma()
    assert dma.trace() == "dma_target : IDLE / dma_master : IDLE for channel 0"
    start(dma, 1, 0x1000, 0x2000, 8)
    lines = dma.trace().splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("dma_channel 1 : ")
    assert "source = 1000" in lines[1]


def test_reset_clears_channels():
    dma = make_dma()
    start(dma, 0, 0x1000, 0x2000, 8)
    dma.transition(IDLE_REQ)
    dma.reset()
    assert dma.channel_state == [ChannelState.IDLE, ChannelState.IDLE]
    assert dma.active == [False, False]
    assert dma.moore().req is False