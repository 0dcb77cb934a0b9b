import logging

import pytest

from pibussim.bus import Ack, ConfigurationError, Opcode, SegmentTable, TargetRequest
from pibussim.simple_ram import RamState, SimpleRam, merge_write

BASE = 0x1000
SIZE = 0x100


def make_ram(latency=0, loader=None):
    table = SegmentTable()
    table.add("ram", BASE, SIZE, 0)
    table.add("ram2", 0x2000, 0x40, 0)
    return SimpleRam(table, 0, latency, loader=loader)


def write(ram, address, value, opc=Opcode.WDU):
    ram.transition(TargetRequest(sel=True, address=address, read=False, opc=opc))
    while ram.state is RamState.WRITE_WAIT:
        ram.transition(TargetRequest(sel=True, address=address, read=False, opc=opc))
    ram.transition(TargetRequest(sel=False, data=value))


def read(ram, address):
    ram.transition(TargetRequest(sel=True, address=address, read=True))
    while ram.state is RamState.READ_WAIT:
        ram.transition(TargetRequest(sel=True, address=address, read=True))
    response = ram.moore()
    ram.transition(TargetRequest(sel=False))
    return response


ALL_OPS = [Opcode.BY0, Opcode.BY1, Opcode.BY2, Opcode.BY3,
           Opcode.HW0, Opcode.HW1, Opcode.WDU, Opcode.NOP]


def test_merge_write_word_and_nop():
    assert merge_write(0x12345678, 0x9ABCDEF0, Opcode.WDU) == 0x9ABCDEF0
    assert merge_write(0x12345678, 0x9ABCDEF0, Opcode.NOP) == 0x12345678


@pytest.mark.parametrize("opc", ALL_OPS)
def test_merge_write_same_data_is_identity(opc):
    assert merge_write(0xCAFEBABE, 0xCAFEBABE, opc) == 0xCAFEBABE


def test_merge_write_byte_lanes_cover_word_disjointly():
    lanes = [merge_write(0, 0xFFFFFFFF, op) for op in (Opcode.BY0, Opcode.BY1, Opcode.BY2, Opcode.BY3)]
    combined = 0
    for lane in lanes:
        assert combined & lane == 0
        combined |= lane
    assert combined == 0xFFFFFFFF
    assert merge_write(0, 0xFFFFFFFF, Opcode.HW0) | merge_write(0, 0xFFFFFFFF, Opcode.HW1) == 0xFFFFFFFF
    assert merge_write(0, 0xFFFFFFFF, Opcode.HW0) == lanes[0] | lanes[1]


def test_merge_write_illegal_opcode():
    with pytest.raises(ValueError):
        merge_write(0, 0, Opcode.WD4)


def test_misaligned_base_rejected():
    table = SegmentTable()
    table.add("bad", 0x1002, 0x100, 0)
    with pytest.raises(ConfigurationError):
        SimpleRam(table, 0, 0)


def test_size_not_multiple_of_four_rejected():
    table = SegmentTable()
    table.add("bad", 0x1000, 0x102, 0)
    with pytest.raises(ConfigurationError):
        SimpleRam(table, 0, 0)


def test_too_many_segments_rejected():
    table = SegmentTable()
    for n in range(17):
        table.add(f"s{n}", 0x1000 * (n + 1), 0x10, 0)
    with pytest.raises(ConfigurationError):
        SimpleRam(table, 0, 0)


def test_write_then_read_round_trip():
    ram = make_ram()
    write(ram, BASE + 8, 0xDEADBEEF)
    response = read(ram, BASE + 8)
    assert response.ack is Ack.READY
    assert response.data == 0xDEADBEEF
    assert ram.read_word(BASE + 8) == 0xDEADBEEF
    assert ram.state is RamState.IDLE


def test_second_segment_round_trip():
    ram = make_ram()
    write(ram, 0x2004, 0x11111111)
    assert ram.read_word(0x2004) == 0x11111111
    assert ram.read_word(BASE + 4) == 0


def test_partial_write_keeps_other_bytes():
    ram = make_ram()
    write(ram, BASE, 0xAAAAAAAA)
    write(ram, BASE, 0x55555555, Opcode.BY0)
    assert ram.read_word(BASE) == merge_write(0xAAAAAAAA, 0x55555555, Opcode.BY0)


@pytest.mark.parametrize("latency", [1, 2, 5])
def test_latency_wait_cycles(latency):
    ram = make_ram(latency)
    request = TargetRequest(sel=True, address=BASE, read=True)
    ram.transition(request)
    waits = 0
    while ram.moore().ack is Ack.WAIT:
        waits += 1
        ram.transition(request)
    assert waits == latency
    assert ram.state is RamState.READ_OK


def test_out_of_segment_is_error():
    ram = make_ram()
    ram.transition(TargetRequest(sel=True, address=0x8000, read=True))
    assert ram.state is RamState.ERROR
    assert ram.moore().ack is Ack.ERROR
    ram.transition(TargetRequest())
    assert ram.state is RamState.IDLE


def test_burst_mixing_read_and_write_is_error():
    ram = make_ram()
    ram.transition(TargetRequest(sel=True, address=BASE, read=True))
    ram.transition(TargetRequest(sel=True, address=BASE + 4, read=False))
    assert ram.state is RamState.ERROR


def test_read_burst_follows_addresses():
    ram = make_ram()
    write(ram, BASE, 7)
    write(ram, BASE + 4, 9)
    ram.transition(TargetRequest(sel=True, address=BASE, read=True))
    first = ram.moore().data
    ram.transition(TargetRequest(sel=True, address=BASE + 4, read=True))
    second = ram.moore().data
    assert (first, second) == (7, 9)


def test_write_burst_leaving_segment_is_error():
    ram = make_ram()
    ram.transition(TargetRequest(sel=True, address=BASE, read=False))
    ram.transition(TargetRequest(sel=True, address=0x2000, read=False, data=3))
    assert ram.state is RamState.ERROR
    assert ram.read_word(BASE) == 3


def test_loader_content_is_little_endian_and_reset_restores():
    ram = make_ram(loader=lambda base, size: b"\x01\x02\x03\x04" if base == BASE else b"")
    assert ram.read_word(BASE) == 0x04030201
    write(ram, BASE, 0)
    assert ram.read_word(BASE) == 0
    ram.reset()
    assert ram.read_word(BASE) == 0x04030201


def test_loader_too_large_rejected():
    with pytest.raises(ConfigurationError):
        make_ram(loader=lambda base, size: bytes(size + 4))


def test_read_word_out_of_segment():
    ram = make_ram()
    with pytest.raises(ValueError):
        ram.read_word(0x9000)


def test_trace_strings():
    ram = make_ram()
    assert ram.trace() == "ram : IDLE"
    write(ram, BASE + 4, 0xABC)
    assert ram.trace(BASE + 4) == f"ram : address = {BASE + 4:x} data = abc"
    assert ram.trace(0x9000) == "ERROR IN RAM : monitored address out of segment"


def test_monitor_logs_changes(caplog):
    ram = make_ram()
    ram.start_monitor(BASE, 8)
    with caplog.at_level(logging.INFO, logger="pibussim.simple_ram"):
        write(ram, BASE + 4, 0x42)
        write(ram, BASE + 0x20, 0x43)
        ram.stop_monitor()
        write(ram, BASE, 0x44)
    changes = [r.getMessage() for r in caplog.records if "RAM Change" in r.getMessage()]
    assert changes == [f"RAM Change : address = {BASE + 4:x} / data = 42"]