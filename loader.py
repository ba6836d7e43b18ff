"""
Y86-64 Object Loader
=====================
Reads the textual ``.yo`` object format produced by the assembler and
writes its bytes into a memory image.

    0x014: 30f00a00000000000000 |   irmovq $10, %rax
    ^^^^^  ^^^^^^^^^^^^^^^^^^^^   ^^^^^^^^^^^^^^^^^^^
    addr   bytes (hex, in order)  ignored

Lines that do not start with ``0x``, or that lack the ``:`` or ``|``
separators, are skipped.  A bad address or hex digit raises
``MalformedInput``; bytes that fall past the end of memory cut the rest of
that line short.
"""

from __future__ import annotations
import logging
import string

from y86 import MalformedInput

log = logging.getLogger(__name__)

_HEX = frozenset(string.hexdigits)


def parse_object_line(lineno: int, line: str) -> tuple[int, bytes] | None:
    """Split one object line into (address, bytes), or None if it carries none."""
    if not line.startswith("0x"):
        return None
    colon = line.find(":")
    if colon < 0:
        log.debug("line %d: no ':' separator, skipped", lineno)
        return None
    pipe = line.find("|", colon)
    if pipe < 0:
        log.debug("line %d: no '|' separator, skipped", lineno)
        return None

    addr_str = line[2:colon].strip()
    if not addr_str or not set(addr_str) <= _HEX:
        raise MalformedInput(lineno, f"Bad address {addr_str!r}")
    addr = int(addr_str, 16)

    enc = line[colon + 1:pipe].strip()
    if not set(enc) <= _HEX:
        raise MalformedInput(lineno, f"Bad hex byte string {enc!r}")
    if len(enc) % 2:
        raise MalformedInput(lineno, f"Odd number of hex digits in {enc!r}")
    return addr, bytes.fromhex(enc)


def load_object(text: str, mem: bytearray) -> int:
    """Load object text into *mem*.  Returns the number of bytes written."""
    written = 0
    for lineno, line in enumerate(text.splitlines(), 1):
        parsed = parse_object_line(lineno, line)
        if parsed is None:
            continue
        addr, data = parsed
        room = max(0, len(mem) - addr)
        if len(data) > room:
            log.warning("line %d: %d of %d bytes at %#06x fall outside memory, truncated",
                        lineno, len(data) - room, len(data), addr)
            data = data[:room]
        if data:
            mem[addr:addr + len(data)] = data
            written += len(data)
    log.debug("loaded %d bytes", written)
    return written


def load_object_file(path: str, mem: bytearray) -> int:
    with open(path, "r", encoding="utf-8") as f:
        return load_object(f.read(), mem)
