"""
Chemu System / Host Loop
=========================
Wires together:
  - one Chip8 core (chemu.py)
  - its Framebuffer and Keypad (devices.py)
  - the pacing that drives them: instructions at a tunable rate and the
    delay/sound timers at a steady 60 Hz

Two ways to drive the machine:

  run_steps(n)       deterministic, instruction-paced.  Timers tick once every
                     `steps_per_tick` steps.  Used by tests and --headless.
  run_realtime(...)  wall-clock paced against perf_counter() deadlines.
                     Timers keep their own 60 Hz deadline, so a pending
                     Fx0A key wait never stalls them.

Faults raised by the core (DecodeError, BusFault, StackFault) propagate out
of every method here unchanged.
"""

from __future__ import annotations
import random
import time
from pathlib import Path
from typing import Callable, Optional

from chemu import Chip8, StepResult
from devices import Framebuffer, Keypad

TIMER_HZ      = 60
DEFAULT_SPEED = 600          # instructions per second
MAX_CATCH_UP  = 5            # periods a late loop may replay before dropping


# ---------------------------------------------------------------------------
#  Pacer
# ---------------------------------------------------------------------------

class Pacer:
    """Fixed-rate deadline tracker.

    due(now) returns how many whole periods have elapsed since the last
    call and moves the deadline forward.  If the loop fell far behind
    (debugger pause, slow host) the backlog is capped at MAX_CATCH_UP and
    the deadline resynchronised, instead of replaying every missed period.
    """

    def __init__(self, hz: float, start: Optional[float] = None):
        if hz <= 0:
            raise ValueError(f"rate must be positive, got {hz}")
        self.period = 1.0 / hz
        self.deadline = (time.perf_counter() if start is None else start) + self.period

    def due(self, now: float) -> int:
        if now < self.deadline:
            return 0
        n = int((now - self.deadline) / self.period) + 1
        if n > MAX_CATCH_UP:
            self.deadline = now + self.period
            return MAX_CATCH_UP
        self.deadline += n * self.period
        return n

    def remaining(self, now: float) -> float:
        return max(0.0, self.deadline - now)


# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class ChemuSystem:
    """A complete CHIP-8 machine plus its host-side pacing."""

    def __init__(self, speed: int = DEFAULT_SPEED,
                 rng: Optional[random.Random] = None):
        if speed <= 0:
            raise ValueError(f"speed must be positive, got {speed}")
        self.speed = speed
        self.fb = Framebuffer()
        self.keypad = Keypad()
        self.cpu = Chip8(self.fb, self.keypad, rng=rng)
        self.timer_ticks: int = 0
        self._tick_phase: int = 0
        self._program: bytes = b""

    @property
    def steps_per_tick(self) -> int:
        return max(1, round(self.speed / TIMER_HZ))

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_program(self, data: bytes | bytearray):
        self.cpu.load_program(data)
        self._program = bytes(data)

    def load_program_file(self, path: str | Path):
        """Read a ROM from disk.  I/O errors propagate to the caller."""
        self.load_program(Path(path).read_bytes())

    def boot(self):
        """Reset the machine and reload the last program image."""
        self.cpu.reset()
        self.keypad.release_all()
        self.keypad.discard_presses()
        self.timer_ticks = 0
        self._tick_phase = 0
        if self._program:
            self.cpu.load_program(self._program)

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def step(self) -> StepResult:
        return self.cpu.step()

    def step_blocking(self, timeout: Optional[float] = None) -> StepResult:
        """Execute one instruction, sleeping on the keypad while an Fx0A
        wait is pending.  Returns AWAITING_KEY only if *timeout* expires."""
        result = self.cpu.step()
        while result is StepResult.AWAITING_KEY:
            if not self.keypad.wait_for_press(timeout):
                return result
            result = self.cpu.step()
        return result

    def tick_timers(self):
        self.cpu.tick_timers()
        self.timer_ticks += 1

    def run_steps(self, n: int) -> int:
        """Run *n* steps with instruction-paced timers.

        Steps spent waiting for a key still count toward the timer cadence,
        which keeps timers running while the program is blocked.  Returns
        the number of instructions that actually executed.
        """
        executed = 0
        per_tick = self.steps_per_tick
        for _ in range(n):
            if self.cpu.step() is StepResult.EXECUTED:
                executed += 1
            # Phase carries across calls so run_steps(1) loops keep cadence
            self._tick_phase += 1
            if self._tick_phase >= per_tick:
                self._tick_phase = 0
                self.tick_timers()
        return executed

    def run_realtime(self, duration: Optional[float] = None,
                     on_frame: Optional[Callable[[], None]] = None,
                     should_stop: Optional[Callable[[], bool]] = None) -> int:
        """Run against the wall clock.

        Instructions are issued one at a time on the instruction pacer;
        timers tick on their own 60 Hz pacer, and on_frame() runs once per
        timer tick (the display hooks in there).  Between deadlines the
        loop sleeps.  Returns the number of instructions executed.
        """
        start = time.perf_counter()
        cpu_pacer = Pacer(self.speed, start)
        timer_pacer = Pacer(TIMER_HZ, start)
        executed = 0

        while True:
            now = time.perf_counter()
            if duration is not None and now - start >= duration:
                break
            if should_stop is not None and should_stop():
                break

            for _ in range(timer_pacer.due(now)):
                self.tick_timers()
                if on_frame is not None:
                    on_frame()

            for _ in range(cpu_pacer.due(now)):
                if self.cpu.step() is StepResult.AWAITING_KEY:
                    break
                executed += 1

            now = time.perf_counter()
            wait = min(cpu_pacer.remaining(now), timer_pacer.remaining(now))
            if wait > 0:
                time.sleep(wait)

        return executed
