"""
Y86-64 Instruction-Cycle Emulator
==================================
A sequential, cycle-stepped emulator for the Y86-64 register machine:
15 signed 64-bit registers, a flat little-endian byte memory and the three
condition flags SF/ZF/OF.

Every cycle runs the same six stages in order, each one reading and
extending a fresh ``CycleState``:

    fetch      decode the instruction at PC into an ``Instruction``
    decode     read the operand registers (valA / valB)
    execute    ALU, condition evaluation, effective address, stack delta
    memory     8-byte loads and stores
    writeback  commit valE / valM to the register file
    pc_update  select the next PC, detect HALT

Nothing is pipelined: a cycle completes fully before the next begins.
Any fault is fatal: the status becomes ERRORED and the exception is
re-raised to the caller unchanged.
"""

from __future__ import annotations
import enum
import logging
import struct
from dataclasses import dataclass
from typing import Callable, Optional, Union

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_MAX = 1 << 13   # default memory size in bytes
WORD = 8            # machine word, bytes

MASK64 = (1 << 64) - 1
SIGN64 = 1 << 63

NUM_REGS = 15
RSP = 4             # stack pointer register index
RNONE = 0xF         # "no register" nibble

REG_NAMES = (
    "%rax", "%rcx", "%rdx", "%rbx", "%rsp", "%rbp", "%rsi", "%rdi",
    "%r8",  "%r9",  "%r10", "%r11", "%r12", "%r13", "%r14",
)

STAGES = ("fetch", "decode", "execute", "memory", "writeback", "pc_update")

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u64(v: int) -> int:
    """Mask to unsigned 64 bits."""
    return v & MASK64

def s64(v: int) -> int:
    """Interpret a 64-bit value as signed."""
    v = u64(v)
    return v - (1 << 64) if v >= SIGN64 else v

# ---------------------------------------------------------------------------
#  Instruction set
# ---------------------------------------------------------------------------

class Opcode(enum.IntEnum):
    HALT  = 0x0
    NOP   = 0x1
    CMOV  = 0x2   # rrmovq / cmovXX
    IRMOV = 0x3
    RMMOV = 0x4
    MRMOV = 0x5
    OPQ   = 0x6
    JXX   = 0x7
    CALL  = 0x8
    RET   = 0x9
    PUSH  = 0xA
    POP   = 0xB


class AluOp(enum.IntEnum):
    ADD = 0x0
    SUB = 0x1
    AND = 0x2
    XOR = 0x3


class Cond(enum.IntEnum):
    ALWAYS = 0x0
    LE     = 0x1
    L      = 0x2
    E      = 0x3
    NE     = 0x4
    GE     = 0x5
    G      = 0x6


# Operand layout per opcode: (register byte, 8-byte constant, length)
LAYOUT: dict[Opcode, tuple[bool, bool, int]] = {
    Opcode.HALT:  (False, False, 1),
    Opcode.NOP:   (False, False, 1),
    Opcode.CMOV:  (True,  False, 2),
    Opcode.IRMOV: (True,  True,  10),
    Opcode.RMMOV: (True,  True,  10),
    Opcode.MRMOV: (True,  True,  10),
    Opcode.OPQ:   (True,  False, 2),
    Opcode.JXX:   (False, True,  9),
    Opcode.CALL:  (False, True,  9),
    Opcode.RET:   (False, False, 1),
    Opcode.PUSH:  (True,  False, 2),
    Opcode.POP:   (True,  False, 2),
}

# Opcodes whose low nibble selects a sub-operation
FUNCTION_CODES: dict[Opcode, type[enum.IntEnum]] = {
    Opcode.CMOV: Cond,
    Opcode.OPQ:  AluOp,
    Opcode.JXX:  Cond,
}

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Y86Error(Exception):
    """Base for every fault that stops the machine."""
    pass

class AddressOutOfBounds(Y86Error):
    def __init__(self, addr: int, what: str = "memory"):
        self.addr = addr
        self.what = what
        if what == "register":
            super().__init__(f"Bad register index {addr:#x}")
        else:
            super().__init__(f"Bad {what} address {addr:#06x}")

class InvalidEncoding(Y86Error):
    def __init__(self, addr: int, byte: int, message: str = ""):
        self.addr = addr
        self.byte = byte
        super().__init__(message or f"Invalid instruction byte {byte:#04x} @ {addr:#06x}")

class MalformedInput(Y86Error):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")

# ---------------------------------------------------------------------------
#  Machine value types
# ---------------------------------------------------------------------------

class Status(enum.Enum):
    RUNNING = "AOK"
    HALTED  = "HLT"
    ERRORED = "ERR"

    def __str__(self) -> str:
        return f"STAT: {self.value}"


@dataclass(frozen=True)
class Flags:
    sf: bool = False
    zf: bool = False
    of: bool = False

    def __str__(self) -> str:
        return f"SF: {int(self.sf)}\tZF: {int(self.zf)}\tOF: {int(self.of)}"


def eval_cond(cc: Cond, flags: Flags) -> bool:
    """Evaluate a condition predicate against the flags."""
    sf, zf, of = flags.sf, flags.zf, flags.of
    if cc == Cond.ALWAYS: return True
    if cc == Cond.LE:     return (sf ^ of) or zf
    if cc == Cond.L:      return sf ^ of
    if cc == Cond.E:      return zf
    if cc == Cond.NE:     return not zf
    if cc == Cond.GE:     return not (sf ^ of) and not zf
    if cc == Cond.G:      return not (sf ^ of)
    raise ValueError(f"Unknown condition {cc!r}")


def alu(op: AluOp, b: int, a: int) -> tuple[int, Flags]:
    """Compute ``b OP a`` over signed 64-bit words.  Returns (result, flags)."""
    if op == AluOp.ADD:
        exact = b + a
    elif op == AluOp.SUB:
        exact = b - a
    elif op == AluOp.AND:
        exact = b & a
    elif op == AluOp.XOR:
        exact = b ^ a
    else:
        raise ValueError(f"Unknown ALU op {op!r}")
    r = s64(exact)
    of = op in (AluOp.ADD, AluOp.SUB) and r != exact
    return r, Flags(sf=r < 0, zf=r == 0, of=of)


@dataclass(frozen=True)
class Instruction:
    """One decoded instruction.  ``ifun`` is None for opcodes without one."""
    addr: int
    icode: Opcode
    ifun: Union[AluOp, Cond, None] = None
    ra: int = RNONE
    rb: int = RNONE
    valc: int = 0
    valp: int = 0

    @property
    def length(self) -> int:
        return self.valp - self.addr


@dataclass
class CycleState:
    """Per-cycle scratch record threaded through the stages."""
    instr: Instruction
    vala: int = 0
    valb: int = 0
    vale: int = 0
    valm: int = 0
    cnd: bool = False


def decode_instruction(mem: bytes | bytearray, pc: int) -> Instruction:
    """Decode the instruction at *pc* without touching any machine state."""
    size = len(mem)

    def need(addr: int, n: int = 1):
        if addr < 0 or addr + n > size:
            raise AddressOutOfBounds(addr, "instruction")

    need(pc)
    byte0 = mem[pc]
    code = (byte0 >> 4) & 0xF
    fun = byte0 & 0xF

    try:
        icode = Opcode(code)
    except ValueError:
        raise InvalidEncoding(pc, byte0, f"Invalid opcode {code:#x} @ {pc:#06x}") from None

    ifun = None
    if icode in FUNCTION_CODES:
        try:
            ifun = FUNCTION_CODES[icode](fun)
        except ValueError:
            raise InvalidEncoding(
                pc, byte0, f"Invalid function {fun:#x} for {icode.name} @ {pc:#06x}") from None

    has_regs, has_valc, length = LAYOUT[icode]
    ra = rb = RNONE
    valc = 0
    pos = pc + 1
    if has_regs:
        need(pos)
        ra = (mem[pos] >> 4) & 0xF
        rb = mem[pos] & 0xF
        pos += 1
    if has_valc:
        need(pos, WORD)
        valc = struct.unpack_from("<q", mem, pos)[0]

    return Instruction(pc, icode, ifun, ra, rb, valc, pc + length)

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class Y86:
    """Y86-64 machine state plus the six-stage instruction cycle."""

    def __init__(self, mem_size: int = MEM_MAX):
        if mem_size < WORD:
            raise ValueError(f"Memory must hold at least one word, got {mem_size}")
        self.mem_size = mem_size
        self.mem = bytearray(mem_size)

        # 15 × signed 64-bit GPRs
        self.regs: list[int] = [0] * NUM_REGS

        self.flags = Flags()
        self.status = Status.RUNNING
        self.error: Optional[Y86Error] = None
        self.pc: int = 0
        self.cycle_count: int = 0

        # Callbacks
        self.on_stage: Optional[Callable[[Y86, str, CycleState], None]] = None
        self.on_cycle: Optional[Callable[[Y86], None]] = None
        self.on_halt: Optional[Callable[[Y86], None]] = None

    # -- Property shortcuts --

    @property
    def sp(self) -> int:
        return self.regs[RSP]

    @sp.setter
    def sp(self, value: int):
        self.regs[RSP] = s64(value)

    @property
    def halted(self) -> bool:
        return self.status is Status.HALTED

    @property
    def running(self) -> bool:
        return self.status is Status.RUNNING

    # -- Register file --

    def _check_reg(self, idx: int):
        if not 0 <= idx < NUM_REGS:
            raise AddressOutOfBounds(idx, "register")

    def reg_read(self, idx: int) -> int:
        self._check_reg(idx)
        return self.regs[idx]

    def reg_write(self, idx: int, val: int):
        self._check_reg(idx)
        self.regs[idx] = s64(val)

    # -- Memory access --

    def _check_addr(self, addr: int, size: int = WORD):
        if addr < 0 or addr + size > self.mem_size:
            raise AddressOutOfBounds(addr)

    def mem_read64(self, addr: int) -> int:
        self._check_addr(addr)
        return struct.unpack_from("<q", self.mem, addr)[0]

    def mem_write64(self, addr: int, val: int):
        self._check_addr(addr)
        struct.pack_into("<q", self.mem, addr, s64(val))

    # =====================================================================
    #  Stages
    # =====================================================================

    def fetch(self) -> CycleState:
        return CycleState(decode_instruction(self.mem, self.pc))

    def decode(self, cs: CycleState):
        ins = cs.instr
        op = ins.icode
        if op in (Opcode.OPQ, Opcode.RMMOV, Opcode.CMOV):
            cs.vala = self.reg_read(ins.ra)
            cs.valb = self.reg_read(ins.rb)
        elif op == Opcode.MRMOV:
            cs.valb = self.reg_read(ins.rb)
        elif op == Opcode.PUSH:
            cs.vala = self.reg_read(ins.ra)
            cs.valb = self.reg_read(RSP)
        elif op == Opcode.CALL:
            cs.valb = self.reg_read(RSP)
        elif op in (Opcode.POP, Opcode.RET):
            cs.vala = cs.valb = self.reg_read(RSP)
        self._validate(ins)

    def execute(self, cs: CycleState):
        ins = cs.instr
        op = ins.icode
        if op == Opcode.IRMOV:
            cs.vale = ins.valc
        elif op == Opcode.CMOV:
            cs.cnd = eval_cond(ins.ifun, self.flags)
            cs.vale = cs.vala if cs.cnd else cs.valb
        elif op in (Opcode.RMMOV, Opcode.MRMOV):
            cs.vale = s64(cs.valb + ins.valc)
        elif op == Opcode.OPQ:
            cs.vale, self.flags = alu(ins.ifun, cs.valb, cs.vala)
        elif op == Opcode.JXX:
            cs.cnd = eval_cond(ins.ifun, self.flags)
            cs.vale = ins.valc if cs.cnd else ins.valp
        elif op in (Opcode.CALL, Opcode.PUSH):
            cs.vale = s64(cs.valb - WORD)
        elif op in (Opcode.RET, Opcode.POP):
            cs.vale = s64(cs.valb + WORD)

    def memory(self, cs: CycleState):
        op = cs.instr.icode
        if op in (Opcode.RMMOV, Opcode.PUSH):
            self.mem_write64(cs.vale, cs.vala)
        elif op == Opcode.CALL:
            self.mem_write64(cs.vale, cs.instr.valp)
        elif op == Opcode.MRMOV:
            cs.valm = self.mem_read64(cs.vale)
        elif op in (Opcode.RET, Opcode.POP):
            cs.valm = self.mem_read64(cs.vala)

    def writeback(self, cs: CycleState):
        ins = cs.instr
        op = ins.icode
        if op in (Opcode.IRMOV, Opcode.CMOV, Opcode.OPQ):
            self.reg_write(ins.rb, cs.vale)
        elif op == Opcode.MRMOV:
            self.reg_write(ins.ra, cs.valm)
        elif op in (Opcode.CALL, Opcode.RET, Opcode.PUSH):
            self.reg_write(RSP, cs.vale)
        elif op == Opcode.POP:
            # %rsp first, so popq %rsp ends up holding the loaded word
            self.reg_write(RSP, cs.vale)
            self.reg_write(ins.ra, cs.valm)

    def pc_update(self, cs: CycleState):
        ins = cs.instr
        op = ins.icode
        if op == Opcode.HALT:
            self.status = Status.HALTED
        if op == Opcode.JXX:
            self.pc = cs.vale
        elif op == Opcode.RET:
            self.pc = cs.valm
        elif op == Opcode.CALL:
            self.pc = ins.valc
        else:
            self.pc = ins.valp

    def _validate(self, ins: Instruction):
        """Reject register nibbles that the instruction would write but never read."""
        if ins.icode == Opcode.IRMOV:
            self._check_reg(ins.rb)
        elif ins.icode in (Opcode.MRMOV, Opcode.POP):
            self._check_reg(ins.ra)

    # =====================================================================
    #  Cycle driver
    # =====================================================================

    def step(self) -> int:
        """Execute one instruction cycle.  Returns cycles consumed (0 once stopped)."""
        if self.status is not Status.RUNNING:
            return 0

        try:
            cs = self.fetch()
            self._notify_stage(STAGES[0], cs)
            # every later stage method is named after its stage
            for name in STAGES[1:]:
                getattr(self, name)(cs)
                self._notify_stage(name, cs)
        except Y86Error as e:
            self.status = Status.ERRORED
            self.error = e
            raise

        self.cycle_count += 1
        log.debug("cycle %d: %#06x %s valE=%#x -> pc=%#06x",
                  self.cycle_count, cs.instr.addr, cs.instr.icode.name,
                  u64(cs.vale), self.pc)

        if self.status is Status.HALTED and self.on_halt:
            self.on_halt(self)
        if self.on_cycle:
            self.on_cycle(self)
        return 1

    def _notify_stage(self, name: str, cs: CycleState):
        if self.on_stage:
            self.on_stage(self, name, cs)

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until HALT, a fault, or max_steps.  Returns cycles executed."""
        total = 0
        while self.status is Status.RUNNING:
            if max_steps is not None and total >= max_steps:
                break
            total += self.step()
        return total

    # -- Load bytes at address --

    def load_bytes(self, addr: int, data: bytes | bytearray):
        """Write raw bytes into memory at the given address."""
        self._check_addr(addr, len(data))
        self.mem[addr:addr + len(data)] = data

    # -- Reset helper --

    def reset(self, clear_mem: bool = False):
        self.regs = [0] * NUM_REGS
        self.flags = Flags()
        self.status = Status.RUNNING
        self.error = None
        self.pc = 0
        self.cycle_count = 0
        if clear_mem:
            self.mem = bytearray(self.mem_size)

    # -- Debug / introspection --

    def dump_mem(self) -> str:
        lines = []
        # a partial trailing word is shown with fewer digits
        for addr in range(0, self.mem_size, WORD):
            word = self.mem[addr:addr + WORD]
            if any(word):
                lines.append(f"0x{addr:04x}: {word.hex()}")
        return "\n".join(lines)

    def dump_regs(self) -> str:
        return "\n".join(f"{REG_NAMES[i]}: 0x{u64(v):016x}"
                         for i, v in enumerate(self.regs) if v != 0)

    def dump_state(self) -> str:
        return (f"\nCycle Count: {self.cycle_count}\n\n"
                f"{self.dump_mem()}\n\n"
                f"{self.dump_regs()}\n\n"
                f"{self.flags}\n"
                f"{self.status}\n"
                f"PC: 0x{u64(self.pc):04x}")
