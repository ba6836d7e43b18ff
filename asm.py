"""
Y86-64 Assembler
=================
Translates Y86-64 assembly text into raw bytecode, or into the textual
``.yo`` object listing that loader.py reads back.

Supports:
  - Labels (terminated with ':'; may share a line with a statement)
  - All twelve instruction classes (rrmovq/cmovXX, OPq, jXX, ...)
  - Immediates ``$N`` / ``$label``, memory operands ``D(%reg)`` / ``(%reg)``
  - Comments ('#' to end of line)
  - .pos, .align, .quad directives

Usage:
  from asm import assemble, assemble_listing
  bytecode = assemble(source_text)
  yo_text  = assemble_listing(source_text)
"""

from __future__ import annotations
import logging
import re
import struct

from y86 import (
    Opcode, AluOp, Cond, LAYOUT, REG_NAMES, RNONE, WORD, MASK64,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Mnemonic → (icode, ifun)
# ---------------------------------------------------------------------------

MNEMONICS: dict[str, tuple[Opcode, int]] = {
    "halt":   (Opcode.HALT, 0),
    "nop":    (Opcode.NOP, 0),
    "rrmovq": (Opcode.CMOV, Cond.ALWAYS),
    "cmovle": (Opcode.CMOV, Cond.LE),
    "cmovl":  (Opcode.CMOV, Cond.L),
    "cmove":  (Opcode.CMOV, Cond.E),
    "cmovne": (Opcode.CMOV, Cond.NE),
    "cmovge": (Opcode.CMOV, Cond.GE),
    "cmovg":  (Opcode.CMOV, Cond.G),
    "irmovq": (Opcode.IRMOV, 0),
    "rmmovq": (Opcode.RMMOV, 0),
    "mrmovq": (Opcode.MRMOV, 0),
    "addq":   (Opcode.OPQ, AluOp.ADD),
    "subq":   (Opcode.OPQ, AluOp.SUB),
    "andq":   (Opcode.OPQ, AluOp.AND),
    "xorq":   (Opcode.OPQ, AluOp.XOR),
    "jmp":    (Opcode.JXX, Cond.ALWAYS),
    "jle":    (Opcode.JXX, Cond.LE),
    "jl":     (Opcode.JXX, Cond.L),
    "je":     (Opcode.JXX, Cond.E),
    "jne":    (Opcode.JXX, Cond.NE),
    "jge":    (Opcode.JXX, Cond.GE),
    "jg":     (Opcode.JXX, Cond.G),
    "call":   (Opcode.CALL, 0),
    "ret":    (Opcode.RET, 0),
    "pushq":  (Opcode.PUSH, 0),
    "popq":   (Opcode.POP, 0),
}

_REG_INDEX = {name: i for i, name in enumerate(REG_NAMES)}

_LABEL_RE = re.compile(r"^([A-Za-z_.][\w.]*):(.*)$")
_MEM_RE = re.compile(r"^(.*)\(\s*(%\w+)\s*\)$")

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def _parse_reg(lineno: int, tok: str) -> int:
    """Parse '%rax'..'%r14'. Returns register index."""
    tok = tok.strip().lower()
    if tok in _REG_INDEX:
        return _REG_INDEX[tok]
    raise AsmError(lineno, f"Invalid register: {tok!r}")

def _parse_imm(lineno: int, tok: str) -> int:
    """Parse an integer literal (decimal or 0x hex, optionally negative)."""
    tok = tok.strip()
    try:
        val = int(tok, 0)
    except ValueError:
        raise AsmError(lineno, f"Bad number: {tok!r}") from None
    if not -(1 << 63) <= val <= MASK64:
        raise AsmError(lineno, f"Value out of 64-bit range: {tok}")
    return val

def _resolve(lineno: int, tok: str, labels: dict[str, int]) -> int:
    """Resolve a token that is either a literal or a label reference."""
    tok = tok.strip()
    if tok in labels:
        return labels[tok]
    if tok and (tok[0].isdigit() or tok[0] == "-"):
        return _parse_imm(lineno, tok)
    raise AsmError(lineno, f"Undefined label: {tok!r}")

def _parse_mem(lineno: int, tok: str, labels: dict[str, int]) -> tuple[int, int]:
    """Parse 'D(%reg)' or '(%reg)' → (displacement, register)."""
    m = _MEM_RE.match(tok.strip())
    if not m:
        raise AsmError(lineno, f"Expected memory operand D(%reg), got {tok!r}")
    disp = m.group(1).strip()
    return (_resolve(lineno, disp, labels) if disp else 0), _parse_reg(lineno, m.group(2))

def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace."""
    return [s.strip() for s in rest.split(",") if s.strip()]

def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' → (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]

def _word(val: int) -> bytes:
    return struct.pack("<Q", val & MASK64)

def _expect(lineno: int, mnem: str, ops: list[str], n: int):
    if len(ops) != n:
        raise AsmError(lineno, f"{mnem} takes {n} operand(s), got {len(ops)}")

# ---------------------------------------------------------------------------
#  Pass 1: placement
# ---------------------------------------------------------------------------

def _place(lineno: int, text: str, pc: int) -> tuple[int, int]:
    """Return the (start, end) addresses of one statement placed at pc."""
    mnem, rest = _split_mnemonic(text)
    mnem = mnem.lower()
    if mnem == ".pos":
        target = _parse_imm(lineno, rest)
        return target, target
    if mnem == ".align":
        n = _parse_imm(lineno, rest)
        if n <= 0:
            raise AsmError(lineno, f"Bad alignment: {n}")
        start = (pc + n - 1) // n * n
        return start, start
    if mnem == ".quad":
        return pc, pc + WORD
    if mnem not in MNEMONICS:
        raise AsmError(lineno, f"Unknown mnemonic: {mnem!r}")
    icode, _ = MNEMONICS[mnem]
    return pc, pc + LAYOUT[icode][2]

# ---------------------------------------------------------------------------
#  Pass 2: emission
# ---------------------------------------------------------------------------

def _emit(lineno: int, text: str, labels: dict[str, int]) -> bytes:
    """Emit bytecode for one statement."""
    mnem, rest = _split_mnemonic(text)
    mnem = mnem.lower()
    ops = _split_ops(rest)

    if mnem in (".pos", ".align"):
        return b""
    if mnem == ".quad":
        _expect(lineno, mnem, ops, 1)
        return _word(_resolve(lineno, ops[0], labels))

    icode, ifun = MNEMONICS[mnem]
    head = bytes([(icode << 4) | ifun])

    if icode in (Opcode.HALT, Opcode.NOP, Opcode.RET):
        _expect(lineno, mnem, ops, 0)
        return head

    if icode in (Opcode.CMOV, Opcode.OPQ):
        _expect(lineno, mnem, ops, 2)
        ra = _parse_reg(lineno, ops[0])
        rb = _parse_reg(lineno, ops[1])
        return head + bytes([(ra << 4) | rb])

    if icode == Opcode.IRMOV:
        _expect(lineno, mnem, ops, 2)
        if not ops[0].startswith("$"):
            raise AsmError(lineno, f"irmovq needs an immediate, got {ops[0]!r}")
        val = _resolve(lineno, ops[0][1:], labels)
        rb = _parse_reg(lineno, ops[1])
        return head + bytes([(RNONE << 4) | rb]) + _word(val)

    if icode == Opcode.RMMOV:
        _expect(lineno, mnem, ops, 2)
        ra = _parse_reg(lineno, ops[0])
        disp, rb = _parse_mem(lineno, ops[1], labels)
        return head + bytes([(ra << 4) | rb]) + _word(disp)

    if icode == Opcode.MRMOV:
        _expect(lineno, mnem, ops, 2)
        disp, rb = _parse_mem(lineno, ops[0], labels)
        ra = _parse_reg(lineno, ops[1])
        return head + bytes([(ra << 4) | rb]) + _word(disp)

    if icode in (Opcode.JXX, Opcode.CALL):
        _expect(lineno, mnem, ops, 1)
        return head + _word(_resolve(lineno, ops[0], labels))

    # pushq / popq
    _expect(lineno, mnem, ops, 1)
    ra = _parse_reg(lineno, ops[0])
    return head + bytes([(ra << 4) | RNONE])

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def _assemble(source: str, base_addr: int) -> list[tuple[int, str, int, bytes, bool]]:
    """
    Two-pass assembler core.
    Pass 1: collect labels and place every statement.
    Pass 2: emit bytes with resolved labels.
    Returns one row per source line: (lineno, raw_line, address, bytes, addressed).
    """
    labels: dict[str, int] = {}
    placed: list[tuple[int, str, str, int, bool]] = []
    pc = base_addr

    for lineno, raw in enumerate(source.splitlines(), 1):
        text = raw.split("#", 1)[0].strip()
        addressed = False
        while True:
            m = _LABEL_RE.match(text)
            if not m:
                break
            lbl = m.group(1)
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = pc
            addressed = True
            text = m.group(2).strip()
        start = pc
        if text:
            start, pc = _place(lineno, text, pc)
            addressed = True
        placed.append((lineno, raw, text, start, addressed))

    rows = []
    for lineno, raw, text, start, addressed in placed:
        data = _emit(lineno, text, labels) if text else b""
        rows.append((lineno, raw, start, data, addressed))
    log.debug("assembled %d lines, %d labels", len(rows), len(labels))
    return rows


def assemble(source: str, base_addr: int = 0) -> bytearray:
    """Assemble *source* into a byte image that starts at *base_addr*."""
    code = bytearray()
    for lineno, _, addr, data, _ in _assemble(source, base_addr):
        if not data:
            continue
        off = addr - base_addr
        if off < 0:
            raise AsmError(lineno, f"Code at {addr:#x} lies below base {base_addr:#x}")
        if len(code) < off + len(data):
            code.extend(bytes(off + len(data) - len(code)))
        code[off:off + len(data)] = data
    return code


def assemble_listing(source: str, base_addr: int = 0) -> str:
    """Assemble *source* into ``.yo`` object text (address: bytes | source)."""
    out = []
    for _, raw, addr, data, addressed in _assemble(source, base_addr):
        if addressed:
            out.append(f"0x{addr:03x}: {data.hex():<20s} | {raw}")
        else:
            out.append(f"{'':27s} | {raw}")
    return "\n".join(out) + "\n"
