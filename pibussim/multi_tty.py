"""PIBUS terminal controller driving up to 16 keyboard/display terminals."""

from __future__ import annotations

import fcntl
import logging
import os
import pty
import subprocess
import termios
from collections import deque
from enum import IntEnum
from typing import Optional, Protocol, Sequence

from pibussim.bus import (
    ADDRESS_MASK,
    Ack,
    ConfigurationError,
    SegmentTable,
    TargetRequest,
    TargetResponse,
)

log = logging.getLogger(__name__)

MAX_TERMINALS = 16

TTY_WRITE = 0x0
TTY_STATUS = 0x4
TTY_READ = 0x8
TTY_CONFIG = 0xC

CTRL_C = 0x03
CARRIAGE_RETURN = 0x0D


class TtyState(IntEnum):
    IDLE = 0x0
    DISPLAY = 0x1
    STATUS = 0x2
    KEYBOARD = 0x3
    CONFIG = 0x4
    ERROR = 0x5


class Terminal(Protocol):
    def write(self, char: int) -> None: ...

    def read_char(self) -> Optional[int]: ...

    def close(self) -> None: ...


class QueueTerminal:
    """An in-memory terminal: typed keys are queued, displayed bytes collected."""

    def __init__(self):
        self.output = bytearray()
        self.closed = False
        self._pending: deque[int] = deque()

    def feed(self, text):
        """Queue keys as if they were typed; ``text`` is str or bytes."""
        data = text.encode("latin-1") if isinstance(text, str) else bytes(text)
        self._pending.extend(data)

    def write(self, char):
        """Display one character; ignored once the terminal is closed."""
        if not self.closed:
            self.output.append(char & 0xFF)

    def read_char(self) -> Optional[int]:
        """The next typed key, or None when none is waiting."""
        if self.closed or not self._pending:
            return None
        return self._pending.popleft()

    def close(self):
        self.closed = True
        self._pending.clear()


def _make_raw(attrs: list) -> list:
    iflag, oflag, cflag, lflag, ispeed, ospeed, cc = attrs
    iflag &= ~(termios.IGNBRK | termios.BRKINT | termios.PARMRK | termios.ISTRIP
               | termios.INLCR | termios.IGNCR | termios.ICRNL | termios.IXON)
    oflag &= ~termios.OPOST
    lflag &= ~(termios.ECHO | termios.ECHONL | termios.ICANON | termios.ISIG | termios.IEXTEN)
    cflag &= ~(termios.CSIZE | termios.PARENB)
    cflag |= termios.CS8
    cc = list(cc)
    cc[termios.VMIN] = 1
    cc[termios.VTIME] = 0
    return [iflag, oflag, cflag, lflag, ispeed, ospeed, cc]


class XtermTerminal:
    """A terminal shown in an xterm window connected through a pseudo-terminal."""

    def __init__(self, title, program="xterm"):
        master, slave = pty.openpty()
        try:
            attrs = _make_raw(termios.tcgetattr(slave))
            attrs[1] |= termios.ONLRET
            attrs[1] &= ~termios.ONLCR
            termios.tcsetattr(slave, termios.TCSANOW, attrs)
            self.process = subprocess.Popen(
                [program, f"-S0/{slave}", "-T", title, "-bg", "black", "-fg", "green"],
                pass_fds=(slave,),
            )
        except BaseException:
            os.close(master)
            os.close(slave)
            raise
        os.close(slave)
        self.fd = master
        self.title = title

        # xterm first prints its window id; it must not reach the platform.
        while True:
            try:
                byte = os.read(master, 1)
            except OSError:
                break
            if not byte or byte in (b"\n", b"\r"):
                break
        try:
            os.write(master, b"\x1b[20h")
        except OSError:
            pass
        attrs = _make_raw(termios.tcgetattr(master))
        attrs[0] |= termios.IGNCR
        termios.tcsetattr(master, termios.TCSANOW, attrs)
        flags = fcntl.fcntl(master, fcntl.F_GETFL)
        fcntl.fcntl(master, fcntl.F_SETFL, flags | os.O_NONBLOCK)
        # The last character to strip is not always present.
        self.read_char()

    def write(self, char):
        """Send one character to the window."""
        if self.fd is None:
            return
        try:
            os.write(self.fd, bytes([char & 0xFF]))
        except OSError:
            pass

    def read_char(self) -> Optional[int]:
        """The next typed key, or None when none is waiting."""
        if self.fd is None:
            return None
        try:
            byte = os.read(self.fd, 1)
        except OSError:
            return None
        return byte[0] if byte else None

    def close(self):
        """Terminate the window and release the pseudo-terminal."""
        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
        if self.fd is not None:
            os.close(self.fd)
            self.fd = None


class MultiTty:
    """Terminal controller: four 32-bit registers per terminal.

    Terminal ``i`` is selected by address bits [7:4]; bits [3:2] select
    WRITE (0x0, write), STATUS (0x4, read), READ (0x8, read) or
    CONFIG (0xC, write). STATUS bit 0 is set while a typed key waits in
    READ; bit 1 reports the display buffer, which is never full. Keys
    typed while READ is full are left pending. Registers are clocked:
    every cycle works from the values of the previous cycle.
    """

    def __init__(self, table: SegmentTable, target, ntty,
                 terminals: Optional[Sequence[Terminal]] = None, name="tty"):
        segments = table.segments_for(target)
        if not segments:
            raise ConfigurationError(f"{name}: no segment for target {target}")
        segment = segments[0]
        if not 1 <= ntty <= MAX_TERMINALS:
            raise ConfigurationError(
                f"{name}: the number of terminals must be between 1 and {MAX_TERMINALS}"
            )
        if segment.base & 0xF:
            raise ConfigurationError(f"{name}: the base address must be a multiple of 16")
        if segment.size < 16 * ntty:
            raise ConfigurationError(f"{name}: the segment size cannot be less than ntty * 16 bytes")
        if terminals is not None and len(terminals) != ntty:
            raise ConfigurationError(f"{name}: expected {ntty} terminals, got {len(terminals)}")
        self.name = name
        self.target = target
        self.segment = segment
        self.ntty = ntty
        if terminals is None:
            terminals = [XtermTerminal(f"{name}_{index}") for index in range(ntty)]
        self.terminals = list(terminals)
        self.keyboard_buf = [0] * ntty
        self.index = 0
        log.info("multi tty %s: %d terminals, segment %s base 0x%x size 0x%x",
                 name, ntty, segment.name, segment.base, segment.size)
        self.reset()

    def __enter__(self) -> "MultiTty":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def reset(self):
        """Return to IDLE with empty buffers, keyboard IRQ on and display IRQ off."""
        self.state = TtyState.IDLE
        self.keyboard_sts = [False] * self.ntty
        self.display_sts = [False] * self.ntty
        self.keyboard_msk = [True] * self.ntty
        self.display_msk = [False] * self.ntty

    def _decode(self, request: TargetRequest) -> tuple[TtyState, int]:
        address = request.address & ADDRESS_MASK
        index = (address >> 4) & 0xF
        cell = address & 0xC
        if not self.segment.contains(address) or index >= self.ntty:
            return TtyState.ERROR, index
        if cell == TTY_WRITE and not request.read:
            return TtyState.DISPLAY, index
        if cell == TTY_STATUS and request.read:
            return TtyState.STATUS, index
        if cell == TTY_READ and request.read:
            return TtyState.KEYBOARD, index
        if cell == TTY_CONFIG and not request.read:
            return TtyState.CONFIG, index
        return TtyState.ERROR, index

    def transition(self, request: TargetRequest):
        """Advance one clock cycle."""
        state, index = self.state, self.index
        keyboard_sts = list(self.keyboard_sts)

        if request.sel:
            self.state, self.index = self._decode(request)
        else:
            self.state = TtyState.IDLE

        if state is TtyState.DISPLAY:
            self.terminals[index].write(request.data & 0xFF)

        if state is TtyState.KEYBOARD:
            keyboard_sts[index] = False
        else:
            for pos, terminal in enumerate(self.terminals):
                if self.keyboard_sts[pos]:
                    continue
                char = terminal.read_char()
                if char is None:
                    continue
                if char == CTRL_C:
                    terminal.close()
                if char == CARRIAGE_RETURN:
                    following = terminal.read_char()
                    if following is not None:
                        char = following
                keyboard_sts[pos] = True
                self.keyboard_buf[pos] = char

        self.keyboard_sts = keyboard_sts

    def moore(self) -> TargetResponse:
        """The ACK and DATA lines driven in the current state."""
        if self.state in (TtyState.DISPLAY, TtyState.CONFIG):
            return TargetResponse(Ack.READY)
        if self.state is TtyState.STATUS:
            k = self.index
            status = (int(self.display_sts[k]) << 1) | int(self.keyboard_sts[k])
            return TargetResponse(Ack.READY, status)
        if self.state is TtyState.KEYBOARD:
            return TargetResponse(Ack.READY, self.keyboard_buf[self.index])
        if self.state is TtyState.ERROR:
            return TargetResponse(Ack.ERROR)
        return TargetResponse()

    def irq_get(self) -> list[bool]:
        """Keyboard IRQ lines: raised while a key waits and the IRQ is enabled."""
        return [sts and msk for sts, msk in zip(self.keyboard_sts, self.keyboard_msk)]

    def irq_put(self) -> list[bool]:
        """Display IRQ lines: raised while the display buffer is empty and enabled."""
        return [not sts and msk for sts, msk in zip(self.display_sts, self.display_msk)]

    def trace(self) -> str:
        return (
            f"{self.name} : {self.state.name}"
            f"   keyboard status[0] = {int(self.keyboard_sts[0])}"
            f"   display status[0] = {int(self.display_sts[0])}"
        )

    def close(self):
        """Close every terminal."""
        for terminal in self.terminals:
            terminal.close()