# pibussim

Cycle-level Python models of components attached to a PIBUS system bus.
Each component is a small state machine that the caller advances one clock
cycle at a time: `transition(...)` computes the next state from the signals
of the current cycle, and `moore()` returns the lines the component drives
in its current state.

## Components

- `pibussim.bus`: the shared vocabulary.
  - `Ack` (`WAIT`, `ERROR`, `READY`, `RETRY`) and `Opcode` (`NOP`, `WDU`,
    `WD2` ... `WD32`, `HW0`, `HW1`, `BY0` ... `BY3`).
  - `SegmentTable(msb_bits=8, default_target=0)`: `add(name, base, size,
    target, cached)` registers a `Segment`; `segments_for(target)`,
    `target_of(address)`, `is_cached(address)` and `all_below(count)` query it.
  - `TargetRequest` (sel, address, read, opc, data, tout) and
    `TargetResponse` (ack, data; `None` means the line is not driven).
  - `ConfigurationError`, raised when a component is built with parameters
    it cannot work with (misaligned segment base, segment too small, too
    many channels or timers, and so on).
- `pibussim.seg_bcu.BusController(table, nb_master, nb_target, time_out=1000000000)`:
  round-robin arbitration between masters, target selection from the
  address MSB bits and a time-out counter. `grants(requests, ack)`,
  `selects(address)` and `moore()` (TOUT, AVALID) give its outputs;
  `statistics()` reports requests, wait cycles and access time per master.
- `pibussim.locks.LockBank(table, target, nlocks)`: binary locks, one per
  32-bit word. A read returns the lock value and sets it; a write clears it.
- `pibussim.simple_ram.SimpleRam(table, target, latency, loader=None)`:
  RAM of up to 16 segments with `latency` wait cycles per transaction,
  byte and half-word writes (`merge_write(word, data, opc)`), `read_word`,
  and a write monitor (`start_monitor` / `stop_monitor`) that logs writes
  through the `logging` module. The optional `loader(base, size)` returns
  the initial little-endian content of a segment at reset.
- `pibussim.multi_timer.MultiTimer(table, target, ntimer)`: up to 32
  periodic timers with VALUE, RUNNING, PERIOD and IRQ registers; `irqs()`
  gives the interrupt lines.
- `pibussim.multi_tty.MultiTty(table, target, ntty, terminals=None)`: up to
  16 terminals with WRITE, STATUS, READ and CONFIG registers; `irq_get()`
  and `irq_put()` give the interrupt lines. `QueueTerminal` keeps typed keys
  and displayed bytes in memory (`feed`, `output`). `XtermTerminal` opens an
  `xterm` window through a pseudo-terminal and is used when no terminals are
  given; it needs a POSIX system with `xterm` installed. `MultiTty` is a
  context manager that closes its terminals.
- `pibussim.multi_dma.MultiDma(table, target, burst, channels)`: DMA
  controller with up to 16 channels, acting as bus target (SOURCE, DEST,
  LENGTH/STATUS, RESET, NOIRQ registers, decoded by
  `pibussim.dma_registers.DmaRegister.decode`) and as bus master (burst
  transfers). `transition(request, gnt, ack, data)` takes both sides;
  `moore()` returns a `DmaOutputs` record; `irqs()` gives the interrupt lines.

Every component also has `reset()` and a one-line `trace()`.

## Installation

```
pip install .
```

Run the tests with:

```
pip install .[test]
pytest
```

## Example

```python
from pibussim.bus import Ack, SegmentTable, TargetRequest
from pibussim.locks import LockBank
from pibussim.simple_ram import SimpleRam

table = SegmentTable()
table.add("locks", 0x2000_0000, 0x100, 0, False)
table.add("ram", 0x0000_0000, 0x1000, 1, True)

locks = LockBank(table, 0, 4)
locks.transition(TargetRequest(sel=True, address=0x2000_0004, read=True))
print(locks.moore())            # READY, data 0: the lock was free
locks.transition(TargetRequest())
print(locks.locks[1])           # True: the read has taken the lock

ram = SimpleRam(table, 1, latency=0)
ram.transition(TargetRequest(sel=True, address=0x10, read=False))
assert ram.moore().ack is Ack.READY
ram.transition(TargetRequest(data=0xDEADBEEF))   # the data cycle
print(hex(ram.read_word(0x10)))  # 0xdeadbeef
```

## What this package does not do

There is no processor or cache model and no simulator that wires the
components together: the caller builds the components, passes each one the
signals of the current cycle and routes their outputs. There is no
command-line program.