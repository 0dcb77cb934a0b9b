"""PIBUS controller: round-robin arbitration, target selection and time-out."""

from __future__ import annotations

import logging
import math
from enum import IntEnum
from typing import Sequence

from pibussim.bus import ADDRESS_MASK, Ack, ConfigurationError, SegmentTable

log = logging.getLogger(__name__)


class BcuState(IntEnum):
    IDLE = 0
    AD = 1
    DTAD = 2
    DT = 3


class BusController:
    """Bus controller with round-robin arbitration between masters.

    The bus is granted in the IDLE state and in the last cycle of a
    transaction (DT state with an acknowledge other than WAIT).
    """

    def __init__(self, table: SegmentTable, nb_master, nb_target, time_out=1000000000, name="bcu"):
        if nb_master < 1:
            raise ConfigurationError(f"{name}: at least one master is required")
        if not table.all_below(nb_target):
            raise ConfigurationError(f"{name}: target index larger than the number of targets")
        if time_out == 0:
            raise ConfigurationError(f"{name}: time_out argument cannot be 0")
        self.name = name
        self.table = table
        self.nb_master = nb_master
        self.nb_target = nb_target
        self.time_out = time_out
        log.info("bus controller %s: %d masters, %d targets, time_out %d",
                 name, nb_master, nb_target, time_out)
        self.reset()

    def reset(self):
        """Return to the IDLE state and clear the statistics counters."""
        self.state = BcuState.IDLE
        self.current_master = 0
        self.tout_counter = self.time_out
        self.req_counts = [0] * self.nb_master
        self.wait_counts = [0] * self.nb_master

    def _check(self, requests: Sequence[bool]) -> None:
        if len(requests) != self.nb_master:
            raise ValueError(f"expected {self.nb_master} request lines, got {len(requests)}")

    def _round_robin(self, requests: Sequence[bool]) -> int | None:
        for step in range(1, self.nb_master + 1):
            candidate = (self.current_master + step) % self.nb_master
            if requests[candidate]:
                return candidate
        return None

    def _allocate(self, requests: Sequence[bool]) -> bool:
        winner = self._round_robin(requests)
        if winner is None:
            return False
        self.current_master = winner
        self.req_counts[winner] = (self.req_counts[winner] + 1) & ADDRESS_MASK
        return True

    def transition(self, requests, lock, ack):
        """Advance one clock cycle."""
        self._check(requests)
        for index, req in enumerate(requests):
            if req:
                self.wait_counts[index] = (self.wait_counts[index] + 1) & ADDRESS_MASK

        if self.state is BcuState.IDLE:
            self.tout_counter = self.time_out
            if self._allocate(requests):
                self.state = BcuState.AD
        elif self.state is BcuState.AD:
            self.state = BcuState.DTAD if lock else BcuState.DT
        elif self.state is BcuState.DTAD:
            if self.tout_counter == 0:
                self.state = BcuState.IDLE
            elif ack != Ack.WAIT and not lock:
                self.state = BcuState.DT
            else:
                self.tout_counter -= 1
        elif self.state is BcuState.DT:
            if self.tout_counter == 0:
                self.state = BcuState.IDLE
            elif ack != Ack.WAIT:
                self.tout_counter = self.time_out
                self.state = BcuState.AD if self._allocate(requests) else BcuState.IDLE
            else:
                self.tout_counter -= 1

    def _granting(self, ack) -> bool:
        return self.state is BcuState.IDLE or (self.state is BcuState.DT and ack != Ack.WAIT)

    def grants(self, requests, ack) -> list[bool]:
        """The GNT lines for the given request lines and acknowledge."""
        self._check(requests)
        result = [False] * self.nb_master
        if self._granting(ack):
            winner = self._round_robin(requests)
            if winner is not None:
                result[winner] = True
        return result

    def _selected(self, address) -> int | None:
        if self.state in (BcuState.AD, BcuState.DTAD):
            return self.table.target_of(address)
        return None

    def selects(self, address) -> list[bool]:
        """The SEL lines for the address currently on the bus."""
        index = self._selected(address)
        return [target == index for target in range(self.nb_target)]

    def moore(self) -> tuple[bool, bool]:
        """The (TOUT, AVALID) lines."""
        return (
            self.tout_counter == 0,
            self.state in (BcuState.AD, BcuState.DTAD),
        )

    def trace(self, requests, ack, address) -> str:
        """One line describing the controller state."""
        self._check(requests)
        text = f"{self.name} : fsm = {self.state.name}"
        if self._granting(ack):
            winner = self._round_robin(requests)
            if winner is not None:
                text += f" | granted master = {winner}"
        target = self._selected(address)
        if target is not None:
            text += f" | selected target = {target}"
        return text

    def statistics(self) -> str:
        """Per-master request counts, wait cycles and mean access time."""
        lines = [f"{self.name} : Statistics"]
        for index, (req, wait) in enumerate(zip(self.req_counts, self.wait_counts)):
            if req:
                access = wait / req
            else:
                access = math.nan if wait == 0 else math.inf
            lines.append(
                f"master {index} : n_req = {req} , n_wait_cycles = {wait} , access time = {access:g}"
            )
        return "\n".join(lines)