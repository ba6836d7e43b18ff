"""
Y86-64 System
==============
Wires together:
  - a Y86 CPU (y86.py) and its memory image
  - the object loader (loader.py)
  - the step-mode observers used for classroom tracing

Step modes:
  NONE   run silently
  CYCLE  report the machine state after every cycle
  STAGE  report the cycle scratch after every stage, and the state after
         every cycle
  DEBUG  report the state after every cycle, then wait on the gate

The reporter is any callable taking one string; the gate is any callable
taking no arguments that returns when execution may continue.  Neither
affects machine semantics.
"""

from __future__ import annotations
import enum
import logging
from typing import Callable, Optional

from y86 import (
    Y86, Y86Error, CycleState, Status, MEM_MAX, u64,
)
from loader import load_object, load_object_file

log = logging.getLogger(__name__)


class StepMode(enum.Enum):
    NONE  = "none"
    CYCLE = "cycle"
    STAGE = "stage"
    DEBUG = "debug"


def format_cycle_state(stage: str, cs: CycleState) -> str:
    """One-line rendering of the scratch record after *stage*."""
    ins = cs.instr
    op = ins.icode.name
    if ins.ifun is not None:
        op += f".{ins.ifun.name}"
    return (f"[{stage:<9s}] {ins.addr:#06x} {op:<10s} "
            f"rA={ins.ra:x} rB={ins.rb:x} valC={u64(ins.valc):#x} "
            f"valP={ins.valp:#x} valA={u64(cs.vala):#x} valB={u64(cs.valb):#x} "
            f"valE={u64(cs.vale):#x} valM={u64(cs.valm):#x} Cnd={int(cs.cnd)}")


class Y86System:
    """A CPU plus loader plus step-mode reporting."""

    def __init__(self, mem_size: int = MEM_MAX,
                 step_mode: StepMode = StepMode.NONE,
                 reporter: Optional[Callable[[str], None]] = None,
                 gate: Optional[Callable[[], None]] = None):
        self.cpu = Y86(mem_size)
        self.step_mode = step_mode
        self.reporter = reporter or print
        self.gate = gate
        if step_mode is StepMode.DEBUG and gate is None:
            raise ValueError("DEBUG step mode needs a gate")
        self._wire_observers()

    def _wire_observers(self):
        cpu = self.cpu
        cpu.on_halt = self._on_halt
        if self.step_mode is StepMode.STAGE:
            cpu.on_stage = self._report_stage
        if self.step_mode is not StepMode.NONE:
            cpu.on_cycle = self._report_cycle

    def _on_halt(self, cpu: Y86):
        log.info("halted at %#06x after %d cycles", cpu.pc, cpu.cycle_count)

    def _report_stage(self, cpu: Y86, stage: str, cs: CycleState):
        self.reporter(format_cycle_state(stage, cs))

    def _report_cycle(self, cpu: Y86):
        self.reporter(cpu.dump_state())
        if self.step_mode is StepMode.DEBUG and cpu.running:
            self.gate()

    # -- Loading --

    def load_object(self, text: str) -> int:
        return load_object(text, self.cpu.mem)

    def load_object_file(self, path: str) -> int:
        n = load_object_file(path, self.cpu.mem)
        log.info("loaded %d bytes from %s", n, path)
        return n

    def load_binary(self, addr: int, data: bytes | bytearray):
        self.cpu.load_bytes(addr, data)

    # -- Execution --

    def step(self) -> int:
        return self.cpu.step()

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until halt or fault.  Returns cycles executed by this call."""
        try:
            total = self.cpu.run(max_steps)
        except Y86Error as e:
            log.error("aborted at cycle %d, pc %#06x: %s",
                      self.cpu.cycle_count, u64(self.cpu.pc), e)
            raise
        if self.cpu.running:
            log.info("stopped after %d cycles without halting", total)
        return total

    # -- Inspection --

    @property
    def status(self) -> Status:
        return self.cpu.status

    @property
    def halted(self) -> bool:
        return self.cpu.halted

    def dump_state(self) -> str:
        return self.cpu.dump_state()
