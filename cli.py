#!/usr/bin/env python3
"""
Chemu Command Line / Monitor
=============================
Command-line front end for the Chemu CHIP-8 emulator.

Provides:
  - Running a ROM in a pygame window (real-time pacing)
  - Headless, instruction-paced runs that print the final screen
  - An interactive debug monitor (step / run / breakpoints / inspection)
  - Assembly and disassembly of program images

Usage:
  python cli.py ROM [--speed N] [--scale N] [--headless] [--steps N]
                    [--monitor] [--trace]
  python cli.py --assemble SRC OUT [--listing]
  python cli.py ROM --disassemble
"""

from __future__ import annotations
import argparse
import cmd
import shlex
import sys
from typing import Optional

from asm import assemble, AsmError
from chemu import ChemuError, BusFault, PROGRAM_START, MEM_SIZE
from instruction import DecodeError, decode, format_instruction
from system import ChemuSystem, DEFAULT_SPEED

DEFAULT_HEADLESS_STEPS = 6000        # ten seconds at the default speed

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

def disasm_one(mem: bytearray | bytes, addr: int) -> tuple[str, int]:
    """Disassemble the word at `addr`.  Returns (text, byte_count).
    Words that do not decode are shown as data."""
    hi = mem[addr] if addr < len(mem) else 0
    lo = mem[addr + 1] if addr + 1 < len(mem) else 0
    word = (hi << 8) | lo
    try:
        return format_instruction(decode(word)), 2
    except DecodeError:
        return f".dw 0x{word:04X}", 2


def disassemble(data: bytes | bytearray, base: int = PROGRAM_START) -> list[str]:
    """Listing of a whole program image, one line per word."""
    lines = []
    for off in range(0, len(data) - 1, 2):
        text, _ = disasm_one(data, off)
        word = (data[off] << 8) | data[off + 1]
        lines.append(f"{base + off:03X}: {word:04X}  {text}")
    if len(data) % 2:
        lines.append(f"{base + len(data) - 1:03X}: {data[-1]:02X}    .db 0x{data[-1]:02X}")
    return lines


# ---------------------------------------------------------------------------
#  Interactive monitor
# ---------------------------------------------------------------------------

class ChemuMonitor(cmd.Cmd):
    """Interactive debug monitor for a CHIP-8 machine."""

    intro = (
        "\n"
        "Chemu CHIP-8 Monitor\n"
        "Type 'help' for commands.  'quit' to exit.\n"
    )
    prompt = "CHIP8> "

    def __init__(self, system: ChemuSystem, stdout=None):
        super().__init__(stdout=stdout)
        self.sys = system
        self.breakpoints: set[int] = set()

    def _out(self, text: str = ""):
        print(text, file=self.stdout)

    def _drain_trace(self):
        """Print and discard the CPU trace collected by the last command."""
        trace = self.sys.cpu.trace_output
        for line in trace:
            self._out(line)
        trace.clear()

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (hex, optional 0x prefix) or 'pc' / 'i'."""
        s = s.strip().lower()
        if s == "pc":
            return self.sys.cpu.pc
        if s == "i":
            return self.sys.cpu.i
        return int(s, 16)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def _parse_key(self, s: str) -> int:
        return int(s.strip(), 16)

    # ================================================================
    #  Commands
    # ================================================================

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        cpu = self.sys.cpu
        for _ in range(count):
            addr_before = cpu.pc
            try:
                text, _ = disasm_one(cpu.mem, addr_before)
                ran = self.sys.run_steps(1)
            except ChemuError as e:
                self._out(f"Fault: {e}")
                break
            if not ran:
                self._out(f"  {addr_before:03X}: {text}  (waiting for key)")
                break
            self._out(f"  {addr_before:03X}: {text}")
        self._drain_trace()

    def do_run(self, arg):
        """Run until a breakpoint, a key wait or a fault: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else 1_000_000
        total = 0
        while total < max_steps:
            pc = self.sys.cpu.pc
            if total and pc in self.breakpoints:
                self._out(f"Breakpoint hit at {pc:03X}")
                break
            try:
                ran = self.sys.run_steps(1)
            except ChemuError as e:
                self._out(f"Fault after {total} steps: {e}")
                break
            if not ran:
                self._out(f"Waiting for key after {total} steps "
                          f"(-> {self.sys.cpu.waiting_key}).  "
                          "Use 'press <key>' then 'run'.")
                break
            total += 1
        else:
            self._out(f"Stopped after {total} steps.")
        self._drain_trace()

    do_c = do_run

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                self._out("Breakpoints:")
                for a in sorted(self.breakpoints):
                    self._out(f"  {a:03X}")
            else:
                self._out("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._out(f"Breakpoint set at {addr:03X}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            self._out("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        self._out(f"Breakpoint at {addr:03X} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show registers, timers and the call depth."""
        self._out(self.sys.cpu.dump_regs())
        self._out(f"  Steps: {self.sys.cpu.step_count}  "
                  f"Timer ticks: {self.sys.timer_ticks}")

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [count]
        Count defaults to 64 bytes."""
        parts = shlex.split(arg)
        if not parts:
            self._out("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64
        if count < 0:
            self._out("Error: count must not be negative")
            return
        if not 0 <= addr < MEM_SIZE:
            self._out(f"Error: address {addr:X} is outside memory")
            return
        try:
            data = self.sys.cpu.read_block(addr, min(count, MEM_SIZE - addr))
        except BusFault as e:
            self._out(f"Error: {e}")
            return

        for row in range(0, len(data), 16):
            chunk = data[row:row + 16]
            hex_str = " ".join(f"{b:02x}" for b in chunk)
            ascii_str = "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in chunk)
            self._out(f"  {addr + row:03X}: {hex_str:<47s}  |{ascii_str}|")

    def do_dis(self, arg):
        """Disassemble: dis [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        cpu = self.sys.cpu
        addr = self._parse_addr(parts[0]) if parts else cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16

        for _ in range(count):
            if addr + 1 >= MEM_SIZE:
                break
            text, size = disasm_one(cpu.mem, addr)
            word = (cpu.mem[addr] << 8) | cpu.mem[addr + 1]
            marker = ">>>" if addr == cpu.pc else "   "
            self._out(f"  {marker} {addr:03X}: {word:04X}  {text}")
            addr += size

    do_disasm = do_dis

    def do_screen(self, arg):
        """Print the framebuffer as text."""
        self._out(self.sys.fb.to_text())

    # -- Input / timers --

    def do_press(self, arg):
        """Press a keypad key: press <0-F>"""
        try:
            key = self._parse_key(arg)
            self.sys.keypad.press(key)
        except ValueError as e:
            self._out(f"Error: {e}")
            return
        self._out(f"  Key {key:X} down")

    def do_release(self, arg):
        """Release a keypad key: release <0-F|all>"""
        if arg.strip().lower() == "all":
            self.sys.keypad.release_all()
            self._out("  All keys up")
            return
        try:
            key = self._parse_key(arg)
            self.sys.keypad.release(key)
        except ValueError as e:
            self._out(f"Error: {e}")
            return
        self._out(f"  Key {key:X} up")

    def do_tick(self, arg):
        """Advance the 60 Hz timers: tick [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            self.sys.tick_timers()
        cpu = self.sys.cpu
        self._out(f"  DT={cpu.delay_timer:02X}  ST={cpu.sound_timer:02X}")

    # -- Misc --

    def do_reset(self, arg):
        """Reset the machine and reload the program."""
        self.sys.boot()
        self._out("System reset.")

    def do_quit(self, arg):
        """Exit the monitor."""
        self._out("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        self._out()
        return self.do_quit(arg)

    def default(self, line):
        """Handle unknown commands gracefully."""
        self._out(f"Unknown command: {line.split()[0]!r}. "
                  "Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass


# ---------------------------------------------------------------------------
#  Run modes
# ---------------------------------------------------------------------------

def _flush_trace(sys_emu: ChemuSystem):
    for line in sys_emu.cpu.trace_output:
        print(line)
    sys_emu.cpu.trace_output.clear()


def run_headless(sys_emu: ChemuSystem, steps: int) -> int:
    """Instruction-paced run with no window.  Prints the final screen."""
    from display import HeadlessDisplay

    display = HeadlessDisplay(sys_emu)
    display.open()
    per_tick = sys_emu.steps_per_tick
    executed = 0
    remaining = steps
    try:
        while remaining > 0:
            chunk = min(per_tick, remaining)
            executed += sys_emu.run_steps(chunk)
            remaining -= chunk
            display.frame()
            if sys_emu.cpu.trace:
                _flush_trace(sys_emu)
    finally:
        display.close()
    print(sys_emu.fb.to_text())
    print(f"[system] {executed} instructions, {sys_emu.timer_ticks} timer "
          f"ticks, {len(display.snapshots)} frames")
    return executed


def run_window(sys_emu: ChemuSystem, scale: int) -> int:
    """Real-time run in a pygame window until the user closes it."""
    from display import FramebufferDisplay

    display = FramebufferDisplay(sys_emu, scale=scale)
    try:
        display.open()
    except ImportError as e:
        print(f"[display] pygame not available: {e}", file=sys.stderr)
        print("[display] Install with: pip install pygame", file=sys.stderr)
        sys.exit(1)
    print(f"[display] Window opened (scale={scale}x, "
          f"{sys_emu.speed} instructions/s)")

    def on_frame():
        display.frame()
        if sys_emu.cpu.trace:
            _flush_trace(sys_emu)

    try:
        return sys_emu.run_realtime(on_frame=on_frame,
                                    should_stop=lambda: not display.running)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return sys_emu.cpu.step_count
    finally:
        display.close()


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def _read_file(path: str, mode: str = "rb"):
    try:
        with open(path, mode) as f:
            return f.read()
    except OSError as e:
        print("Could not open file", file=sys.stderr)
        print(f"Cause: {e}", file=sys.stderr)
        sys.exit(1)


def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(
        prog="chemu",
        description="Chemu CHIP-8 emulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py pong.ch8\n"
               "  python cli.py pong.ch8 --speed 1000 --scale 15\n"
               "  python cli.py pong.ch8 --headless --steps 20000\n"
               "  python cli.py pong.ch8 --monitor\n"
               "  python cli.py pong.ch8 --disassemble\n"
               "  python cli.py --assemble game.asm game.ch8 --listing\n"
    )
    parser.add_argument("rom", nargs="?", default=None, metavar="ROM",
                        help="CHIP-8 program image to run")
    parser.add_argument("--speed", type=int, default=DEFAULT_SPEED, metavar="N",
                        help=f"Instructions per second (default: {DEFAULT_SPEED})")
    parser.add_argument("--scale", type=int, default=10, metavar="N",
                        help="Pixel scale factor for the window (default: 10)")
    parser.add_argument("--headless", action="store_true",
                        help="Run without a window and print the final screen")
    parser.add_argument("--steps", type=int, default=None, metavar="N",
                        help="Instructions to run in headless mode "
                             f"(default: {DEFAULT_HEADLESS_STEPS})")
    parser.add_argument("--monitor", action="store_true",
                        help="Start the interactive debug monitor")
    parser.add_argument("--trace", action="store_true",
                        help="Print every executed instruction")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC to the program image OUT and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="Print assembly listing (with --assemble)")
    parser.add_argument("--disassemble", action="store_true",
                        help="Print a disassembly of ROM and exit")
    args = parser.parse_args(argv)

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        source = _read_file(src_path, "r")
        try:
            code = assemble(source, PROGRAM_START, listing=args.listing)
        except AsmError as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            sys.exit(1)
        try:
            with open(out_path, "wb") as f:
                f.write(code)
        except OSError as e:
            print("Could not open file", file=sys.stderr)
            print(f"Cause: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"Assembled {src_path} → {out_path} ({len(code)} bytes)")
        return

    if args.rom is None:
        print("No CHIP-8 program passed in", file=sys.stderr)
        sys.exit(1)

    data = _read_file(args.rom)

    if args.disassemble:
        for line in disassemble(data):
            print(line)
        return

    try:
        sys_emu = ChemuSystem(speed=args.speed)
        sys_emu.load_program(data)
    except (ChemuError, ValueError) as e:
        print(f"[chemu] {e}", file=sys.stderr)
        sys.exit(1)
    sys_emu.cpu.trace = args.trace

    if args.monitor:
        monitor = ChemuMonitor(sys_emu)
        try:
            monitor.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return

    try:
        if args.headless:
            run_headless(sys_emu, args.steps if args.steps is not None
                         else DEFAULT_HEADLESS_STEPS)
        else:
            run_window(sys_emu, args.scale)
    except ChemuError as e:
        if sys_emu.cpu.trace:
            _flush_trace(sys_emu)
        where = f" at PC={sys_emu.cpu.pc:#05x}" if isinstance(e, DecodeError) else ""
        print(f"[chemu] {e}{where}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
