"""
Chemu CHIP-8 Machine
=====================
The instruction executor: owns registers, memory, call stack and timers,
and applies one decoded instruction per step().

Memory map (4 KiB, byte addressed):

  0x000 – 0x04F   built-in hex font, 16 glyphs × 5 bytes (read-only)
  0x050 – 0x1FF   scratch; the call stack grows upward from 0x050
  0x200 – 0xFFF   program image and data

Each step runs in two phases.  The value phase mutates registers, memory,
timers, the framebuffer or the keypad queue.  The control-flow phase picks
the next PC: +2 by default, +4 for a taken skip, or a jump/call/return
target.  A pending Fx0A (wait for key) stops after the value phase with the
PC untouched and step() reports AWAITING_KEY, so the host loop keeps
ticking timers and redrawing while it waits.

Malformed programs fail loudly: unknown opcodes raise DecodeError,
out-of-range memory accesses raise BusFault and call-stack misuse raises
StackFault.  None of these are caught here.
"""

from __future__ import annotations
import random
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from devices import Framebuffer, Keypad
from instruction import (
    ChemuError, DecodeError, Register, Instruction, INSTRUCTION_TYPES,
    decode, format_instruction,
    Sys, Clear, Return, Jump, Call, SkipEqualImmediate, SkipNotEqualImmediate,
    SkipEqualRegister, LoadImmediate, AddImmediate, LoadRegister, Or, And, Xor,
    AddRegister, Subtract, ShiftRight, SubtractNegated, ShiftLeft,
    SkipNotEqualRegister, LoadAddress, JumpOffset, Random, Draw, SkipIfPressed,
    SkipIfNotPressed, ReadDelay, WaitKey, StoreDelay, StoreSound, AddAddress,
    LoadDigitAddress, StoreBcd, StoreArray, LoadArray,
)

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE       = 0x1000
FONT_ADDR      = 0x000
GLYPH_SIZE     = 5
FONT_SIZE      = 16 * GLYPH_SIZE     # 80 bytes
STACK_BASE     = FONT_ADDR + FONT_SIZE
PROGRAM_START  = 0x200
MAX_PROGRAM    = MEM_SIZE - PROGRAM_START
MAX_CALL_DEPTH = 16
NUM_REGS       = 16
FLAG           = Register.VF

FONT = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class BusFault(ChemuError):
    """Memory access outside the 4 KiB address space, or a write into the
    font ROM."""

    def __init__(self, address: int, pc: int, word: Optional[int],
                 reason: str = "out of range"):
        self.address = address
        self.pc = pc
        self.word = word
        op = f"{word:04X}" if word is not None else "----"
        super().__init__(f"Bus fault @ {address:#05x} ({reason}) "
                         f"executing {op} at PC={pc:#05x}")


class StackFault(ChemuError):
    """Call deeper than MAX_CALL_DEPTH, or RET with nothing to return to."""

    def __init__(self, pc: int, word: Optional[int], message: str):
        self.pc = pc
        self.word = word
        op = f"{word:04X}" if word is not None else "----"
        super().__init__(f"Stack fault: {message} executing {op} at PC={pc:#05x}")


class ProgramTooLarge(ChemuError):
    def __init__(self, size: int):
        self.size = size
        super().__init__(f"Program is {size} bytes; at most {MAX_PROGRAM} "
                         f"fit above {PROGRAM_START:#05x}")


class StepResult(Enum):
    EXECUTED = "EXECUTED"
    AWAITING_KEY = "AWAITING_KEY"


# Returned by a value-phase handler to stop the step before control flow.
_AWAIT = object()


# ---------------------------------------------------------------------------
#  Machine
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 interpreter core.

    Usage:
        cpu = Chip8()
        cpu.load_program(rom_bytes)
        while cpu.step() is StepResult.EXECUTED:
            ...
        cpu.tick_timers()      # 60 times a second, from the host loop
    """

    def __init__(self, framebuffer: Optional[Framebuffer] = None,
                 keypad: Optional[Keypad] = None,
                 rng: Optional[random.Random] = None):
        self.framebuffer = framebuffer if framebuffer is not None else Framebuffer()
        self.keypad = keypad if keypad is not None else Keypad()
        self.rng = rng if rng is not None else random.Random()

        self.mem = bytearray(MEM_SIZE)
        self.v: list[int] = [0] * NUM_REGS
        self.i: int = 0
        self.pc: int = PROGRAM_START
        self.sp: int = STACK_BASE
        self.delay_timer: int = 0
        self.sound_timer: int = 0

        # Register Fx0A is blocked on, None when not waiting
        self.waiting_key: Optional[Register] = None

        self.step_count: int = 0
        self.trace: bool = False
        self.trace_output: list[str] = []

        # Context for fault messages
        self._cur_pc: int = PROGRAM_START
        self._cur_word: Optional[int] = None

        self._effects: dict[type, Callable] = self._build_effects()
        self._flow: dict[type, Callable] = self._build_flow()

        self.reset()

    @classmethod
    def from_file(cls, path: str | Path, **kwargs) -> "Chip8":
        cpu = cls(**kwargs)
        cpu.load_program_file(path)
        return cpu

    # -- Reset / loading --

    def reset(self):
        """Power-on state.  Clears memory (program included)."""
        self.mem[:] = bytes(MEM_SIZE)
        self.mem[FONT_ADDR:FONT_ADDR + FONT_SIZE] = FONT
        self.v = [0] * NUM_REGS
        self.i = 0
        self.pc = PROGRAM_START
        self.sp = STACK_BASE
        self.delay_timer = 0
        self.sound_timer = 0
        self.waiting_key = None
        self.step_count = 0
        self._cur_pc = PROGRAM_START
        self._cur_word = None
        self.framebuffer.clear()

    def load_program(self, data: bytes | bytearray):
        """Copy a raw program image to PROGRAM_START.  Everything past the
        image is zeroed, so nothing from a previous program survives."""
        if len(data) > MAX_PROGRAM:
            raise ProgramTooLarge(len(data))
        self.mem[PROGRAM_START:] = bytes(MAX_PROGRAM)
        self.mem[PROGRAM_START:PROGRAM_START + len(data)] = data

    def load_program_file(self, path: str | Path):
        self.load_program(Path(path).read_bytes())

    # -- Properties --

    @property
    def sound_active(self) -> bool:
        return self.sound_timer > 0

    @property
    def call_depth(self) -> int:
        return (self.sp - STACK_BASE) // 2

    @property
    def awaiting_key(self) -> bool:
        return self.waiting_key is not None

    # -- Memory access --

    def _check_addr(self, addr: int, size: int = 1, write: bool = False):
        if size < 0:
            raise BusFault(addr, self._cur_pc, self._cur_word,
                           f"negative length {size}")
        if addr < 0 or addr + size > MEM_SIZE:
            bad = addr if addr < 0 or addr >= MEM_SIZE else MEM_SIZE
            raise BusFault(bad, self._cur_pc, self._cur_word)
        if write and addr < FONT_ADDR + FONT_SIZE:
            raise BusFault(addr, self._cur_pc, self._cur_word,
                           "write to font ROM")

    def mem_read8(self, addr: int) -> int:
        self._check_addr(addr)
        return self.mem[addr]

    def mem_write8(self, addr: int, val: int):
        self._check_addr(addr, write=True)
        self.mem[addr] = val & 0xFF

    def mem_read16(self, addr: int) -> int:
        self._check_addr(addr, 2)
        return (self.mem[addr] << 8) | self.mem[addr + 1]

    def mem_write16(self, addr: int, val: int):
        self._check_addr(addr, 2, write=True)
        self.mem[addr] = (val >> 8) & 0xFF
        self.mem[addr + 1] = val & 0xFF

    def read_block(self, addr: int, length: int) -> bytes:
        self._check_addr(addr, length)
        return bytes(self.mem[addr:addr + length])

    def write_block(self, addr: int, data: bytes | bytearray | list[int]):
        self._check_addr(addr, len(data), write=True)
        self.mem[addr:addr + len(data)] = bytes(data)

    # -- Call stack --

    def push_return(self, addr: int):
        if self.call_depth >= MAX_CALL_DEPTH:
            raise StackFault(self._cur_pc, self._cur_word,
                             f"call depth exceeds {MAX_CALL_DEPTH}")
        self.mem_write16(self.sp, addr)
        self.sp += 2

    def pop_return(self) -> int:
        if self.sp <= STACK_BASE:
            raise StackFault(self._cur_pc, self._cur_word,
                             "return with empty call stack")
        self.sp -= 2
        return self.mem_read16(self.sp)

    # -- Timers --

    def tick_timers(self):
        """One 60 Hz tick.  Called by the host loop, never by step()."""
        if self.delay_timer > 0:
            self.delay_timer -= 1
        if self.sound_timer > 0:
            self.sound_timer -= 1

    # =====================================================================
    #  STEP — fetch / decode / execute
    # =====================================================================

    def fetch(self) -> int:
        """Big-endian word at PC.  Does not advance PC."""
        self._cur_pc = self.pc
        self._cur_word = None
        return self.mem_read16(self.pc)

    def step(self) -> StepResult:
        """Execute one instruction."""
        word = self.fetch()
        self._cur_word = word
        instr = decode(word)
        if self.trace and self.waiting_key is None:
            self.trace_output.append(
                f"{self.pc:03X}: {word:04X}  {format_instruction(instr)}")
        return self.execute(instr)

    def execute(self, instr: Instruction) -> StepResult:
        """Apply an already decoded instruction at the current PC."""
        kind = type(instr)
        effect = self._effects.get(kind)
        flow = self._flow.get(kind)
        if effect is None and flow is None:
            raise TypeError(f"not an instruction: {instr!r}")

        # Phase 1: value effects
        if effect is not None and effect(instr) is _AWAIT:
            return StepResult.AWAITING_KEY

        # Phase 2: control flow
        self.pc = flow(instr) if flow is not None else self.pc + 2
        self.step_count += 1
        return StepResult.EXECUTED

    def run(self, max_steps: int = 1_000_000) -> int:
        """Step until max_steps or a key wait.  Returns instructions run."""
        done = 0
        for _ in range(max_steps):
            if self.step() is StepResult.AWAITING_KEY:
                break
            done += 1
        return done

    # =====================================================================
    #  Value phase
    # =====================================================================

    def _build_effects(self) -> dict[type, Callable]:
        return {
            Sys:              self._op_sys,
            Clear:            self._op_clear,
            LoadImmediate:    self._op_load_imm,
            AddImmediate:     self._op_add_imm,
            LoadRegister:     self._op_load_reg,
            Or:               self._op_or,
            And:              self._op_and,
            Xor:              self._op_xor,
            AddRegister:      self._op_add_reg,
            Subtract:         self._op_sub,
            ShiftRight:       self._op_shr,
            SubtractNegated:  self._op_subn,
            ShiftLeft:        self._op_shl,
            LoadAddress:      self._op_load_addr,
            Random:           self._op_random,
            Draw:             self._op_draw,
            ReadDelay:        self._op_read_delay,
            WaitKey:          self._op_wait_key,
            StoreDelay:       self._op_store_delay,
            StoreSound:       self._op_store_sound,
            AddAddress:       self._op_add_addr,
            LoadDigitAddress: self._op_load_digit,
            StoreBcd:         self._op_store_bcd,
            StoreArray:       self._op_store_array,
            LoadArray:        self._op_load_array,
        }

    def _op_sys(self, ins: Sys):
        # Native machine-code call; nothing to run on an interpreter.
        pass

    def _op_clear(self, ins: Clear):
        self.framebuffer.clear()

    def _op_load_imm(self, ins: LoadImmediate):
        self.v[ins.register] = ins.value & 0xFF

    def _op_add_imm(self, ins: AddImmediate):
        self.v[ins.register] = (self.v[ins.register] + ins.value) & 0xFF

    def _op_load_reg(self, ins: LoadRegister):
        self.v[ins.dest] = self.v[ins.src]

    def _op_or(self, ins: Or):
        self.v[ins.dest] |= self.v[ins.src]

    def _op_and(self, ins: And):
        self.v[ins.dest] &= self.v[ins.src]

    def _op_xor(self, ins: Xor):
        self.v[ins.dest] ^= self.v[ins.src]

    # Flag-producing ops write the result first and VF last, so VF holds
    # the flag even when it is also the destination.

    def _op_add_reg(self, ins: AddRegister):
        total = self.v[ins.dest] + self.v[ins.src]
        self.v[ins.dest] = total & 0xFF
        self.v[FLAG] = 1 if total > 0xFF else 0

    def _op_sub(self, ins: Subtract):
        a, b = self.v[ins.dest], self.v[ins.src]
        self.v[ins.dest] = (a - b) & 0xFF
        self.v[FLAG] = 1 if a >= b else 0

    def _op_subn(self, ins: SubtractNegated):
        a, b = self.v[ins.dest], self.v[ins.src]
        self.v[ins.dest] = (b - a) & 0xFF
        self.v[FLAG] = 1 if b >= a else 0

    def _op_shr(self, ins: ShiftRight):
        src = self.v[ins.src]
        self.v[ins.dest] = src >> 1
        self.v[FLAG] = src & 1

    def _op_shl(self, ins: ShiftLeft):
        src = self.v[ins.src]
        self.v[ins.dest] = (src << 1) & 0xFF
        self.v[FLAG] = (src >> 7) & 1

    def _op_load_addr(self, ins: LoadAddress):
        self.i = ins.addr

    def _op_random(self, ins: Random):
        self.v[ins.register] = self.rng.randrange(256) & ins.mask

    def _op_draw(self, ins: Draw):
        sprite = self.read_block(self.i, ins.length)
        collision = self.framebuffer.draw(self.v[ins.x], self.v[ins.y], sprite)
        self.v[FLAG] = 1 if collision else 0

    def _op_read_delay(self, ins: ReadDelay):
        self.v[ins.register] = self.delay_timer

    def _op_wait_key(self, ins: WaitKey):
        if self.waiting_key is None:
            # Only presses that arrive after the wait starts count
            self.waiting_key = ins.register
            self.keypad.discard_presses()
        key = self.keypad.pop_press()
        if key is None:
            return _AWAIT
        self.v[ins.register] = key & 0xF
        self.waiting_key = None

    def _op_store_delay(self, ins: StoreDelay):
        self.delay_timer = self.v[ins.register]

    def _op_store_sound(self, ins: StoreSound):
        self.sound_timer = self.v[ins.register]

    def _op_add_addr(self, ins: AddAddress):
        self.i = (self.i + self.v[ins.register]) & 0xFFFF

    def _op_load_digit(self, ins: LoadDigitAddress):
        self.i = FONT_ADDR + (self.v[ins.register] & 0xF) * GLYPH_SIZE

    def _op_store_bcd(self, ins: StoreBcd):
        val = self.v[ins.register]
        self.write_block(self.i, [val // 100, (val // 10) % 10, val % 10])

    def _op_store_array(self, ins: StoreArray):
        self.write_block(self.i, self.v[:ins.end + 1])

    def _op_load_array(self, ins: LoadArray):
        data = self.read_block(self.i, ins.end + 1)
        for reg, val in enumerate(data):
            self.v[reg] = val

    # =====================================================================
    #  Control-flow phase — each handler returns the next PC
    # =====================================================================

    def _build_flow(self) -> dict[type, Callable]:
        return {
            Return:                self._flow_return,
            Jump:                  self._flow_jump,
            Call:                  self._flow_call,
            JumpOffset:            self._flow_jump_offset,
            SkipEqualImmediate:    lambda ins: self._skip(self.v[ins.register] == ins.value),
            SkipNotEqualImmediate: lambda ins: self._skip(self.v[ins.register] != ins.value),
            SkipEqualRegister:     lambda ins: self._skip(self.v[ins.reg1] == self.v[ins.reg2]),
            SkipNotEqualRegister:  lambda ins: self._skip(self.v[ins.reg1] != self.v[ins.reg2]),
            SkipIfPressed:         lambda ins: self._skip(self.keypad.is_held(self.v[ins.keycode] & 0xF)),
            SkipIfNotPressed:      lambda ins: self._skip(not self.keypad.is_held(self.v[ins.keycode] & 0xF)),
        }

    def _skip(self, cond: bool) -> int:
        return self.pc + (4 if cond else 2)

    def _flow_return(self, ins: Return) -> int:
        return self.pop_return()

    def _flow_jump(self, ins: Jump) -> int:
        return ins.addr

    def _flow_call(self, ins: Call) -> int:
        self.push_return(self.pc + 2)
        return ins.addr

    def _flow_jump_offset(self, ins: JumpOffset) -> int:
        return ins.base_addr + self.v[0]

    # -- Coverage check (used by tests) --

    def handled_types(self) -> frozenset:
        return frozenset(self._effects) | frozenset(self._flow)

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X}={self.v[r]:02X}" for r in range(row, row + 4)))
        lines.append(f"  PC={self.pc:03X}  I={self.i:04X}  "
                     f"SP={self.sp:03X} (depth {self.call_depth})")
        lines.append(f"  DT={self.delay_timer:02X}  ST={self.sound_timer:02X}"
                     + (f"  waiting for key -> {self.waiting_key}"
                        if self.waiting_key is not None else ""))
        return "\n".join(lines)


__all__ = [
    "Chip8", "StepResult", "ChemuError", "DecodeError", "BusFault",
    "StackFault", "ProgramTooLarge", "FONT", "MEM_SIZE", "FONT_ADDR",
    "FONT_SIZE", "GLYPH_SIZE", "STACK_BASE", "PROGRAM_START", "MAX_PROGRAM",
    "MAX_CALL_DEPTH", "INSTRUCTION_TYPES",
]
