"""
Chemu Instruction Decoder
==========================
Turns a raw 16-bit CHIP-8 word into one of a closed set of instruction
values, and back again.

Every instruction is big-endian and exactly two bytes.  Decoding looks at
the top nibble (the *family*) first; families 0x0, 0x5, 0x8, 0x9, 0xE and
0xF then select the actual instruction from the low nibble or low byte.
Operand fields always sit at fixed positions:

    F X Y N        X/Y  = register nibbles
    F X K K        KK   = 8-bit literal
    F N N N        NNN  = 12-bit address

Register nibbles cover all sixteen registers, so operand decoding can never
fail.  Only an unknown family/sub-selector combination is an error.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from enum import IntEnum
from typing import Union

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class ChemuError(Exception):
    """Base for every error raised by the emulator core."""
    pass


class DecodeError(ChemuError):
    """The word matches no known instruction."""

    def __init__(self, word: int):
        self.word = word & 0xFFFF
        super().__init__(f"illegal opcode: {self.word:04X}")


# ---------------------------------------------------------------------------
#  Registers
# ---------------------------------------------------------------------------

class Register(IntEnum):
    """The sixteen 8-bit general registers.  VF doubles as the flag register
    and is overwritten by arithmetic, shift and draw instructions."""
    V0 = 0x0
    V1 = 0x1
    V2 = 0x2
    V3 = 0x3
    V4 = 0x4
    V5 = 0x5
    V6 = 0x6
    V7 = 0x7
    V8 = 0x8
    V9 = 0x9
    VA = 0xA
    VB = 0xB
    VC = 0xC
    VD = 0xD
    VE = 0xE
    VF = 0xF

    @classmethod
    def from_nibble(cls, n: int) -> "Register":
        return cls(n & 0xF)

    def __str__(self) -> str:
        return f"V{self.value:X}"


# ---------------------------------------------------------------------------
#  Instruction variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Sys:
    """0nnn — call a native routine.  Ignored by modern interpreters."""
    addr: int

@dataclass(frozen=True)
class Clear:
    """00E0 — clear the display."""

@dataclass(frozen=True)
class Return:
    """00EE — return from a subroutine."""

@dataclass(frozen=True)
class Jump:
    """1nnn — jump to addr."""
    addr: int

@dataclass(frozen=True)
class Call:
    """2nnn — call the subroutine at addr."""
    addr: int

@dataclass(frozen=True)
class SkipEqualImmediate:
    """3xkk — skip the next instruction if Vx == kk."""
    register: Register
    value: int

@dataclass(frozen=True)
class SkipNotEqualImmediate:
    """4xkk — skip the next instruction if Vx != kk."""
    register: Register
    value: int

@dataclass(frozen=True)
class SkipEqualRegister:
    """5xy0 — skip the next instruction if Vx == Vy."""
    reg1: Register
    reg2: Register

@dataclass(frozen=True)
class LoadImmediate:
    """6xkk — Vx = kk."""
    register: Register
    value: int

@dataclass(frozen=True)
class AddImmediate:
    """7xkk — Vx += kk, wrapping, VF untouched."""
    register: Register
    value: int

@dataclass(frozen=True)
class LoadRegister:
    """8xy0 — Vx = Vy."""
    dest: Register
    src: Register

@dataclass(frozen=True)
class Or:
    """8xy1 — Vx |= Vy."""
    dest: Register
    src: Register

@dataclass(frozen=True)
class And:
    """8xy2 — Vx &= Vy."""
    dest: Register
    src: Register

@dataclass(frozen=True)
class Xor:
    """8xy3 — Vx ^= Vy."""
    dest: Register
    src: Register

@dataclass(frozen=True)
class AddRegister:
    """8xy4 — Vx += Vy; VF = carry."""
    dest: Register
    src: Register

@dataclass(frozen=True)
class Subtract:
    """8xy5 — Vx -= Vy; VF = 1 when no borrow."""
    dest: Register
    src: Register

@dataclass(frozen=True)
class ShiftRight:
    """8xy6 — Vx = Vy >> 1; VF = bit shifted out."""
    dest: Register
    src: Register

@dataclass(frozen=True)
class SubtractNegated:
    """8xy7 — Vx = Vy - Vx; VF = 1 when no borrow."""
    dest: Register
    src: Register

@dataclass(frozen=True)
class ShiftLeft:
    """8xyE — Vx = Vy << 1; VF = bit shifted out."""
    dest: Register
    src: Register

@dataclass(frozen=True)
class SkipNotEqualRegister:
    """9xy0 — skip the next instruction if Vx != Vy."""
    reg1: Register
    reg2: Register

@dataclass(frozen=True)
class LoadAddress:
    """Annn — I = addr."""
    addr: int

@dataclass(frozen=True)
class JumpOffset:
    """Bnnn — jump to addr + V0."""
    base_addr: int

@dataclass(frozen=True)
class Random:
    """Cxkk — Vx = random byte & kk."""
    register: Register
    mask: int

@dataclass(frozen=True)
class Draw:
    """Dxyn — draw an n-byte sprite from I at (Vx, Vy); VF = collision."""
    x: Register
    y: Register
    length: int

@dataclass(frozen=True)
class SkipIfPressed:
    """Ex9E — skip the next instruction if key Vx is held."""
    keycode: Register

@dataclass(frozen=True)
class SkipIfNotPressed:
    """ExA1 — skip the next instruction if key Vx is not held."""
    keycode: Register

@dataclass(frozen=True)
class ReadDelay:
    """Fx07 — Vx = delay timer."""
    register: Register

@dataclass(frozen=True)
class WaitKey:
    """Fx0A — wait for a key press, store it in Vx."""
    register: Register

@dataclass(frozen=True)
class StoreDelay:
    """Fx15 — delay timer = Vx."""
    register: Register

@dataclass(frozen=True)
class StoreSound:
    """Fx18 — sound timer = Vx."""
    register: Register

@dataclass(frozen=True)
class AddAddress:
    """Fx1E — I += Vx."""
    register: Register

@dataclass(frozen=True)
class LoadDigitAddress:
    """Fx29 — I = address of the font glyph for digit Vx."""
    register: Register

@dataclass(frozen=True)
class StoreBcd:
    """Fx33 — store the decimal digits of Vx at I, I+1, I+2."""
    register: Register

@dataclass(frozen=True)
class StoreArray:
    """Fx55 — store V0..Vx at I."""
    end: Register

@dataclass(frozen=True)
class LoadArray:
    """Fx65 — load V0..Vx from I."""
    end: Register


Instruction = Union[
    Sys, Clear, Return, Jump, Call, SkipEqualImmediate, SkipNotEqualImmediate,
    SkipEqualRegister, LoadImmediate, AddImmediate, LoadRegister, Or, And, Xor,
    AddRegister, Subtract, ShiftRight, SubtractNegated, ShiftLeft,
    SkipNotEqualRegister, LoadAddress, JumpOffset, Random, Draw, SkipIfPressed,
    SkipIfNotPressed, ReadDelay, WaitKey, StoreDelay, StoreSound, AddAddress,
    LoadDigitAddress, StoreBcd, StoreArray, LoadArray,
]

# ---------------------------------------------------------------------------
#  Encoding table
# ---------------------------------------------------------------------------
# type → (fixed bits, operand layout)
#   ""     no operands
#   "nnn"  12-bit address
#   "xkk"  register + byte
#   "xy"   two registers
#   "xyn"  two registers + nibble
#   "x"    one register

ENCODING: dict[type, tuple[int, str]] = {
    Sys:                   (0x0000, "nnn"),
    Clear:                 (0x00E0, ""),
    Return:                (0x00EE, ""),
    Jump:                  (0x1000, "nnn"),
    Call:                  (0x2000, "nnn"),
    SkipEqualImmediate:    (0x3000, "xkk"),
    SkipNotEqualImmediate: (0x4000, "xkk"),
    SkipEqualRegister:     (0x5000, "xy"),
    LoadImmediate:         (0x6000, "xkk"),
    AddImmediate:          (0x7000, "xkk"),
    LoadRegister:          (0x8000, "xy"),
    Or:                    (0x8001, "xy"),
    And:                   (0x8002, "xy"),
    Xor:                   (0x8003, "xy"),
    AddRegister:           (0x8004, "xy"),
    Subtract:              (0x8005, "xy"),
    ShiftRight:            (0x8006, "xy"),
    SubtractNegated:       (0x8007, "xy"),
    ShiftLeft:             (0x800E, "xy"),
    SkipNotEqualRegister:  (0x9000, "xy"),
    LoadAddress:           (0xA000, "nnn"),
    JumpOffset:            (0xB000, "nnn"),
    Random:                (0xC000, "xkk"),
    Draw:                  (0xD000, "xyn"),
    SkipIfPressed:         (0xE09E, "x"),
    SkipIfNotPressed:      (0xE0A1, "x"),
    ReadDelay:             (0xF007, "x"),
    WaitKey:               (0xF00A, "x"),
    StoreDelay:            (0xF015, "x"),
    StoreSound:            (0xF018, "x"),
    AddAddress:            (0xF01E, "x"),
    LoadDigitAddress:      (0xF029, "x"),
    StoreBcd:              (0xF033, "x"),
    StoreArray:            (0xF055, "x"),
    LoadArray:             (0xF065, "x"),
}

INSTRUCTION_TYPES = frozenset(ENCODING)

# Sub-selector tables for the shared families
_ALU_OPS = {
    0x0: LoadRegister, 0x1: Or, 0x2: And, 0x3: Xor, 0x4: AddRegister,
    0x5: Subtract, 0x6: ShiftRight, 0x7: SubtractNegated, 0xE: ShiftLeft,
}

_KEY_OPS = {
    0x9E: SkipIfPressed,
    0xA1: SkipIfNotPressed,
}

_MISC_OPS = {
    0x07: ReadDelay, 0x0A: WaitKey, 0x15: StoreDelay, 0x18: StoreSound,
    0x1E: AddAddress, 0x29: LoadDigitAddress, 0x33: StoreBcd,
    0x55: StoreArray, 0x65: LoadArray,
}


# ---------------------------------------------------------------------------
#  Decode
# ---------------------------------------------------------------------------

def decode(word: int) -> Instruction:
    """Decode one 16-bit word.  Raises DecodeError for unknown encodings."""
    word &= 0xFFFF
    f   = (word >> 12) & 0xF
    x   = Register.from_nibble(word >> 8)
    y   = Register.from_nibble(word >> 4)
    n   = word & 0x000F
    kk  = word & 0x00FF
    nnn = word & 0x0FFF

    if f == 0x0:
        if word == 0x00E0:
            return Clear()
        if word == 0x00EE:
            return Return()
        return Sys(nnn)
    elif f == 0x1: return Jump(nnn)
    elif f == 0x2: return Call(nnn)
    elif f == 0x3: return SkipEqualImmediate(x, kk)
    elif f == 0x4: return SkipNotEqualImmediate(x, kk)
    elif f == 0x5:
        if n == 0x0:
            return SkipEqualRegister(x, y)
    elif f == 0x6: return LoadImmediate(x, kk)
    elif f == 0x7: return AddImmediate(x, kk)
    elif f == 0x8:
        cls = _ALU_OPS.get(n)
        if cls is not None:
            return cls(x, y)
    elif f == 0x9:
        if n == 0x0:
            return SkipNotEqualRegister(x, y)
    elif f == 0xA: return LoadAddress(nnn)
    elif f == 0xB: return JumpOffset(nnn)
    elif f == 0xC: return Random(x, kk)
    elif f == 0xD: return Draw(x, y, n)
    elif f == 0xE:
        cls = _KEY_OPS.get(kk)
        if cls is not None:
            return cls(x)
    elif f == 0xF:
        cls = _MISC_OPS.get(kk)
        if cls is not None:
            return cls(x)

    raise DecodeError(word)


def decode_bytes(data: bytes | bytearray, offset: int = 0) -> Instruction:
    """Decode the big-endian word at data[offset:offset+2]."""
    return decode((data[offset] << 8) | data[offset + 1])


# ---------------------------------------------------------------------------
#  Encode
# ---------------------------------------------------------------------------

def encode(instr: Instruction) -> int:
    """Inverse of decode()."""
    base, layout = ENCODING[type(instr)]
    ops = [getattr(instr, f.name) for f in fields(instr)]

    if layout == "":
        return base
    if layout == "nnn":
        return base | (ops[0] & 0xFFF)
    if layout == "xkk":
        return base | ((ops[0] & 0xF) << 8) | (ops[1] & 0xFF)
    if layout == "xy":
        return base | ((ops[0] & 0xF) << 8) | ((ops[1] & 0xF) << 4)
    if layout == "xyn":
        return (base | ((ops[0] & 0xF) << 8) | ((ops[1] & 0xF) << 4)
                | (ops[2] & 0xF))
    if layout == "x":
        return base | ((ops[0] & 0xF) << 8)
    raise ValueError(f"unknown operand layout {layout!r}")


# ---------------------------------------------------------------------------
#  Mnemonics
# ---------------------------------------------------------------------------

MNEMONICS: dict[type, str] = {
    Sys:                   "SYS 0x{addr:03X}",
    Clear:                 "CLS",
    Return:                "RET",
    Jump:                  "JP 0x{addr:03X}",
    Call:                  "CALL 0x{addr:03X}",
    SkipEqualImmediate:    "SE {register!s}, 0x{value:02X}",
    SkipNotEqualImmediate: "SNE {register!s}, 0x{value:02X}",
    SkipEqualRegister:     "SE {reg1!s}, {reg2!s}",
    LoadImmediate:         "LD {register!s}, 0x{value:02X}",
    AddImmediate:          "ADD {register!s}, 0x{value:02X}",
    LoadRegister:          "LD {dest!s}, {src!s}",
    Or:                    "OR {dest!s}, {src!s}",
    And:                   "AND {dest!s}, {src!s}",
    Xor:                   "XOR {dest!s}, {src!s}",
    AddRegister:           "ADD {dest!s}, {src!s}",
    Subtract:              "SUB {dest!s}, {src!s}",
    ShiftRight:            "SHR {dest!s}, {src!s}",
    SubtractNegated:       "SUBN {dest!s}, {src!s}",
    ShiftLeft:             "SHL {dest!s}, {src!s}",
    SkipNotEqualRegister:  "SNE {reg1!s}, {reg2!s}",
    LoadAddress:           "LD I, 0x{addr:03X}",
    JumpOffset:            "JP V0, 0x{base_addr:03X}",
    Random:                "RND {register!s}, 0x{mask:02X}",
    Draw:                  "DRW {x!s}, {y!s}, {length}",
    SkipIfPressed:         "SKP {keycode!s}",
    SkipIfNotPressed:      "SKNP {keycode!s}",
    ReadDelay:             "LD {register!s}, DT",
    WaitKey:               "LD {register!s}, K",
    StoreDelay:            "LD DT, {register!s}",
    StoreSound:            "LD ST, {register!s}",
    AddAddress:            "ADD I, {register!s}",
    LoadDigitAddress:      "LD F, {register!s}",
    StoreBcd:              "LD B, {register!s}",
    StoreArray:            "LD [I], {end!s}",
    LoadArray:             "LD {end!s}, [I]",
}


def format_instruction(instr: Instruction) -> str:
    """Render an instruction as assembler text, e.g. ``DRW V0, V1, 5``."""
    template = MNEMONICS[type(instr)]
    return template.format(**{f.name: getattr(instr, f.name)
                              for f in fields(instr)})
