"""
Chemu Peripheral Devices
=========================
The two collaborators the CPU core talks to:

  Framebuffer  — 64×32 monochrome display surface (draw-with-XOR + clear)
  Keypad       — 16-key hexadecimal keypad (held state + key-down events)

Keys can arrive from a thread other than the one stepping the CPU (see
ChemuSystem.step_blocking), so every mutation goes through a lock.
"""

from __future__ import annotations
import threading
from collections import deque
from typing import Optional

import numpy as np

NUM_KEYS = 16


# ---------------------------------------------------------------------------
#  Framebuffer
# ---------------------------------------------------------------------------

class Framebuffer:
    """1-bit-per-pixel display.  Pixels are stored as a (HEIGHT, WIDTH)
    uint8 array of 0/1 values so the renderer can blit it directly."""

    WIDTH = 64
    HEIGHT = 32

    def __init__(self):
        self.pixels = np.zeros((self.HEIGHT, self.WIDTH), dtype=np.uint8)
        self.dirty: bool = True
        self.draw_count: int = 0
        self._lock = threading.Lock()

    def clear(self):
        with self._lock:
            self.pixels.fill(0)
            self.dirty = True

    def draw(self, x: int, y: int, sprite: bytes | bytearray) -> bool:
        """XOR *sprite* onto the screen at (x, y).

        Each sprite byte is one 8-pixel row, MSB leftmost.  Coordinates wrap
        around both edges; nothing is ever clipped.  Returns True if any
        pixel went from on to off.
        """
        collision = False
        with self._lock:
            for row, bits in enumerate(sprite):
                py = (y + row) % self.HEIGHT
                for col in range(8):
                    if bits & (0x80 >> col):
                        px = (x + col) % self.WIDTH
                        if self.pixels[py, px]:
                            collision = True
                        self.pixels[py, px] ^= 1
            self.dirty = True
            self.draw_count += 1
        return collision

    def pixel(self, x: int, y: int) -> bool:
        return bool(self.pixels[y % self.HEIGHT, x % self.WIDTH])

    @property
    def lit_count(self) -> int:
        return int(self.pixels.sum())

    def consume_dirty(self) -> bool:
        """Return the dirty flag and clear it."""
        with self._lock:
            was = self.dirty
            self.dirty = False
        return was

    def copy_pixels(self) -> np.ndarray:
        with self._lock:
            return self.pixels.copy()

    def snapshot(self) -> bytes:
        """One byte (0/1) per pixel, row-major."""
        with self._lock:
            return self.pixels.tobytes()

    def to_text(self, on: str = "#", off: str = ".") -> str:
        rows = self.copy_pixels()
        return "\n".join(
            "".join(on if p else off for p in row) for row in rows
        )


# ---------------------------------------------------------------------------
#  Keypad
# ---------------------------------------------------------------------------
# COSMAC VIP keypad layout:
#
#     1 2 3 C
#     4 5 6 D
#     7 8 9 E
#     A 0 B F

def _check_key(key: int) -> int:
    if not 0 <= key < NUM_KEYS:
        raise ValueError(f"Invalid key: {key!r} (must be 0x0-0xF)")
    return key


class Keypad:
    """Held-key state plus a queue of key-down events.

    The CPU asks two questions:
      is_held(k)    — is key k down right now?          (Ex9E / ExA1)
      pop_press()   — next key-down event, or None      (Fx0A, non-blocking)

    wait_for_key() is the blocking form of pop_press(); it sleeps on a
    condition variable until the host delivers a press.
    """

    def __init__(self):
        self._held = [False] * NUM_KEYS
        self._presses: deque[int] = deque()
        self._cond = threading.Condition()

    def press(self, key: int):
        key = _check_key(key)
        with self._cond:
            if not self._held[key]:
                self._held[key] = True
                self._presses.append(key)
                self._cond.notify_all()

    def release(self, key: int):
        key = _check_key(key)
        with self._cond:
            self._held[key] = False

    def release_all(self):
        with self._cond:
            self._held = [False] * NUM_KEYS

    def is_held(self, key: int) -> bool:
        key = _check_key(key)
        with self._cond:
            return self._held[key]

    @property
    def held_keys(self) -> list[int]:
        with self._cond:
            return [k for k in range(NUM_KEYS) if self._held[k]]

    @property
    def has_press(self) -> bool:
        with self._cond:
            return bool(self._presses)

    def pop_press(self) -> Optional[int]:
        with self._cond:
            if self._presses:
                return self._presses.popleft()
            return None

    def discard_presses(self):
        with self._cond:
            self._presses.clear()

    def wait_for_press(self, timeout: Optional[float] = None) -> bool:
        """Block until a key-down event is queued, without consuming it."""
        with self._cond:
            return bool(self._cond.wait_for(lambda: self._presses,
                                            timeout=timeout))

    def wait_for_key(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until a key-down event arrives.  Returns None on timeout."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._presses, timeout=timeout):
                return None
            return self._presses.popleft()
