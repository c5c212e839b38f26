"""
Chemu Assembler
================
Translates CHIP-8 assembly text into a raw big-endian program image.

Supports:
  - Labels (terminated with ':', alone or in front of an instruction)
  - Every instruction, in the mnemonics printed by the disassembler
    (CLS, RET, SYS, JP, CALL, SE, SNE, LD, ADD, OR, AND, XOR, SUB, SHR,
    SUBN, SHL, RND, DRW, SKP, SKNP)
  - Immediate literals (decimal, 0x hex, 0b binary)
  - Comments (';' to end of line)
  - .org, .db, .dw directives

Usage:
  from asm import assemble
  rom = assemble(source_text)          # origin defaults to 0x200
"""

from __future__ import annotations
from typing import Optional

from instruction import (
    Register, Instruction, encode,
    Sys, Clear, Return, Jump, Call, SkipEqualImmediate, SkipNotEqualImmediate,
    SkipEqualRegister, LoadImmediate, AddImmediate, LoadRegister, Or, And, Xor,
    AddRegister, Subtract, ShiftRight, SubtractNegated, ShiftLeft,
    SkipNotEqualRegister, LoadAddress, JumpOffset, Random, Draw, SkipIfPressed,
    SkipIfNotPressed, ReadDelay, WaitKey, StoreDelay, StoreSound, AddAddress,
    LoadDigitAddress, StoreBcd, StoreArray, LoadArray,
)

DEFAULT_ORIGIN = 0x200

# Two-register ALU mnemonics (family 0x8)
ALU_OPS = {
    "or": Or, "and": And, "xor": Xor, "sub": Subtract, "subn": SubtractNegated,
}

SHIFT_OPS = {"shr": ShiftRight, "shl": ShiftLeft}

# LD <special>, Vx
LD_STORE_OPS = {
    "dt": StoreDelay, "st": StoreSound, "f": LoadDigitAddress,
    "b": StoreBcd, "[i]": StoreArray,
}


class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _parse_reg(tok: str) -> Optional[Register]:
    """Parse 'V0'-'VF' (any case).  Returns None if tok is not a register."""
    t = tok.strip().upper()
    if len(t) == 2 and t[0] == "V" and t[1] in "0123456789ABCDEF":
        return Register(int(t[1], 16))
    return None


def _parse_imm(tok: str) -> int:
    """Parse an immediate value (decimal, 0x hex, 0b binary)."""
    return int(tok.strip(), 0)


def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace."""
    return [s.strip() for s in rest.split(",") if s.strip()]


def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' → (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def _strip_comment(raw: str) -> str:
    return raw.split(";", 1)[0].strip()


# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def assemble(source: str, base_addr: int = DEFAULT_ORIGIN,
             listing: bool = False) -> bytearray:
    """
    Two-pass assembler.
    Pass 1: collect labels, compute sizes.
    Pass 2: emit bytes with resolved addresses.
    If listing=True, print an address/hex/source listing to stdout.
    The returned image starts at base_addr.
    """
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = _strip_comment(raw)
        if stripped:
            cleaned.append((i, stripped))

    # ---- Pass 1: label collection and size computation ----
    labels: dict[str, int] = {}
    sizes: list[tuple[int, str, int]] = []  # (line_no, text, size_bytes)
    pc = base_addr

    for lineno, text in cleaned:
        head, _, tail = text.partition(":")
        if _ and head.strip() and " " not in head.strip():
            lbl = head.strip()
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = pc
            text = tail.strip()
            if not text:
                continue

        lower = text.lower()
        if lower.startswith(".org"):
            target = _value(lineno, text[4:], {}, 16)
            if target < pc:
                raise AsmError(lineno, f".org {target:#x} moves backwards "
                                       f"(already at {pc:#x})")
            sizes.append((lineno, text, target - pc))
            pc = target
            continue
        if lower.startswith(".db"):
            n = len(_split_ops(text[3:]))
            sizes.append((lineno, text, n))
            pc += n
            continue
        if lower.startswith(".dw"):
            n = len(_split_ops(text[3:])) * 2
            sizes.append((lineno, text, n))
            pc += n
            continue

        sizes.append((lineno, text, 2))
        pc += 2

    # ---- Pass 2: emit bytes ----
    code = bytearray()
    pc = base_addr
    listing_lines = []  # (addr, hex_bytes, source_text)

    for lineno, text, sz in sizes:
        lower = text.lower()
        if lower.startswith(".org"):
            code.extend(bytes(sz))
            if listing:
                listing_lines.append((pc, "", text))
            pc += sz
            continue

        if lower.startswith(".db"):
            emitted = bytearray(
                _value(lineno, tok, labels, 8) for tok in _split_ops(text[3:]))
        elif lower.startswith(".dw"):
            emitted = bytearray()
            for tok in _split_ops(text[3:]):
                v = _value(lineno, tok, labels, 16)
                emitted.append((v >> 8) & 0xFF)
                emitted.append(v & 0xFF)
        else:
            word = encode(parse_instruction(lineno, text, labels))
            emitted = bytearray([(word >> 8) & 0xFF, word & 0xFF])

        assert len(emitted) == sz, f"Size mismatch line {lineno}: expected {sz}, got {len(emitted)}"
        if listing:
            hexstr = " ".join(f"{b:02X}" for b in emitted[:8])
            if len(emitted) > 8:
                hexstr += " ..."
            listing_lines.append((pc, hexstr, text))
        code.extend(emitted)
        pc += sz

    if listing:
        addr_labels: dict[int, list[str]] = {}
        for lbl, addr in labels.items():
            addr_labels.setdefault(addr, []).append(lbl)
        for addr, hexstr, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"              {lbl}:")
            print(f"  {addr:03X}  {hexstr:<8s}  {src}")
        for addr in sorted(addr_labels):
            for lbl in addr_labels[addr]:
                print(f"              {lbl}:")

    return code


# ---------------------------------------------------------------------------
#  Operand resolution
# ---------------------------------------------------------------------------

def _value(lineno: int, tok: str, labels: dict[str, int], bits: int) -> int:
    """Resolve a label or literal and range-check it to *bits* bits.
    8-bit literals may be written as negative numbers (two's complement)."""
    tok = tok.strip()
    if tok in labels:
        val = labels[tok]
    else:
        try:
            val = _parse_imm(tok)
        except ValueError:
            raise AsmError(lineno, f"Unknown label or bad number: {tok!r}") from None
    if bits == 8 and -0x80 <= val < 0:
        val &= 0xFF
    if not 0 <= val < (1 << bits):
        raise AsmError(lineno, f"Value {tok!r} does not fit in {bits} bits")
    return val


def _reg(lineno: int, tok: str) -> Register:
    reg = _parse_reg(tok)
    if reg is None:
        raise AsmError(lineno, f"Expected register V0-VF, got {tok!r}")
    return reg


def _expect(lineno: int, mnem: str, ops: list[str], *counts: int):
    if len(ops) not in counts:
        want = " or ".join(str(c) for c in counts)
        raise AsmError(lineno, f"{mnem.upper()} takes {want} operand(s), "
                               f"got {len(ops)}")


# ---------------------------------------------------------------------------
#  Instruction parsing
# ---------------------------------------------------------------------------

def parse_instruction(lineno: int, text: str,
                      labels: Optional[dict[str, int]] = None) -> Instruction:
    """Parse one line of assembly into an instruction value."""
    labels = labels or {}
    mnem, rest = _split_mnemonic(text)
    m = mnem.lower()
    ops = _split_ops(rest)

    if m == "cls":
        _expect(lineno, m, ops, 0)
        return Clear()
    if m == "ret":
        _expect(lineno, m, ops, 0)
        return Return()
    if m == "sys":
        _expect(lineno, m, ops, 1)
        return Sys(_value(lineno, ops[0], labels, 12))
    if m == "call":
        _expect(lineno, m, ops, 1)
        return Call(_value(lineno, ops[0], labels, 12))

    if m == "jp":
        _expect(lineno, m, ops, 1, 2)
        if len(ops) == 2:
            if _parse_reg(ops[0]) is not Register.V0:
                raise AsmError(lineno, "JP with two operands must be JP V0, addr")
            return JumpOffset(_value(lineno, ops[1], labels, 12))
        return Jump(_value(lineno, ops[0], labels, 12))

    if m in ("se", "sne"):
        _expect(lineno, m, ops, 2)
        x = _reg(lineno, ops[0])
        y = _parse_reg(ops[1])
        if y is not None:
            return SkipEqualRegister(x, y) if m == "se" else SkipNotEqualRegister(x, y)
        kk = _value(lineno, ops[1], labels, 8)
        return SkipEqualImmediate(x, kk) if m == "se" else SkipNotEqualImmediate(x, kk)

    if m == "ld":
        _expect(lineno, m, ops, 2)
        dst, src = ops[0].lower(), ops[1].lower()
        if dst == "i":
            return LoadAddress(_value(lineno, ops[1], labels, 12))
        if dst in LD_STORE_OPS:
            return LD_STORE_OPS[dst](_reg(lineno, ops[1]))
        x = _reg(lineno, ops[0])
        if src == "dt":
            return ReadDelay(x)
        if src == "k":
            return WaitKey(x)
        if src == "[i]":
            return LoadArray(x)
        y = _parse_reg(ops[1])
        if y is not None:
            return LoadRegister(x, y)
        return LoadImmediate(x, _value(lineno, ops[1], labels, 8))

    if m == "add":
        _expect(lineno, m, ops, 2)
        if ops[0].lower() == "i":
            return AddAddress(_reg(lineno, ops[1]))
        x = _reg(lineno, ops[0])
        y = _parse_reg(ops[1])
        if y is not None:
            return AddRegister(x, y)
        return AddImmediate(x, _value(lineno, ops[1], labels, 8))

    if m in ALU_OPS:
        _expect(lineno, m, ops, 2)
        return ALU_OPS[m](_reg(lineno, ops[0]), _reg(lineno, ops[1]))

    if m in SHIFT_OPS:
        _expect(lineno, m, ops, 1, 2)
        x = _reg(lineno, ops[0])
        y = _reg(lineno, ops[1]) if len(ops) == 2 else x
        return SHIFT_OPS[m](x, y)

    if m == "rnd":
        _expect(lineno, m, ops, 2)
        return Random(_reg(lineno, ops[0]), _value(lineno, ops[1], labels, 8))

    if m == "drw":
        _expect(lineno, m, ops, 3)
        return Draw(_reg(lineno, ops[0]), _reg(lineno, ops[1]),
                    _value(lineno, ops[2], labels, 4))

    if m == "skp":
        _expect(lineno, m, ops, 1)
        return SkipIfPressed(_reg(lineno, ops[0]))
    if m == "sknp":
        _expect(lineno, m, ops, 1)
        return SkipIfNotPressed(_reg(lineno, ops[0]))

    raise AsmError(lineno, f"Unknown mnemonic: {mnem!r}")
