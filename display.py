"""
Chemu Framebuffer Display
==========================
Renders the 64×32 Framebuffer in a pygame window and feeds keyboard
events into the Keypad.

The window is driven from the host loop's per-frame callback (once per
60 Hz timer tick), so all pygame calls stay on the thread that opened it:

    disp = FramebufferDisplay(sys_emu, scale=10)
    disp.open()
    sys_emu.run_realtime(on_frame=disp.frame,
                         should_stop=lambda: disp.quit_requested)
    disp.close()

Keyboard mapping: the 0–9 and A–F keys press keypad keys 0x0–0xF.
Escape or closing the window requests a stop.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from system import ChemuSystem

os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")

OFF_COLOUR = (0, 0, 0)
ON_COLOUR = (255, 255, 255)


def _key_map(pygame) -> dict[int, int]:
    """pygame key code → keypad key."""
    keys = {getattr(pygame, f"K_{d}"): d for d in range(10)}
    for n, ch in enumerate("abcdef"):
        keys[getattr(pygame, f"K_{ch}")] = 0xA + n
    return keys


def pixels_to_rgb(pixels: np.ndarray) -> np.ndarray:
    """(H, W) 0/1 array → (W, H, 3) uint8 array for pygame.surfarray."""
    on = np.array(ON_COLOUR, dtype=np.uint8)
    off = np.array(OFF_COLOUR, dtype=np.uint8)
    rgb = np.where(pixels.T[:, :, None] != 0, on, off)
    return rgb.astype(np.uint8)


class FramebufferDisplay:
    """pygame window for the CHIP-8 framebuffer."""

    def __init__(self, sys_emu: "ChemuSystem", scale: int = 10,
                 title: str = "Chemu"):
        self.sys = sys_emu
        self.scale = max(1, scale)
        self.title = title
        self.quit_requested = False
        self.frames = 0
        self._pygame = None
        self._screen = None
        self._surface = None
        self._keys: dict[int, int] = {}

    # -- public API -------------------------------------------------------

    def open(self):
        import pygame

        self._pygame = pygame
        pygame.init()
        pygame.display.set_caption(self.title)
        fb = self.sys.fb
        self._screen = pygame.display.set_mode(
            (fb.WIDTH * self.scale, fb.HEIGHT * self.scale))
        self._surface = pygame.Surface((fb.WIDTH, fb.HEIGHT))
        self._keys = _key_map(pygame)
        self._screen.fill(OFF_COLOUR)
        pygame.display.flip()

    def close(self):
        if self._pygame is not None:
            self._pygame.quit()
            self._pygame = None

    @property
    def running(self) -> bool:
        return self._pygame is not None and not self.quit_requested

    def frame(self):
        """Per-tick hook: pump input, then redraw if anything changed."""
        if self._pygame is None:
            return
        self.poll_events()
        self.render()

    def poll_events(self) -> bool:
        """Forward key events to the keypad.  Returns False once the user
        has asked to quit."""
        pygame = self._pygame
        keypad = self.sys.keypad
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                self.quit_requested = True
            elif event.type == pygame.KEYDOWN:
                if event.key == pygame.K_ESCAPE:
                    self.quit_requested = True
                elif event.key in self._keys:
                    keypad.press(self._keys[event.key])
            elif event.type == pygame.KEYUP:
                if event.key in self._keys:
                    keypad.release(self._keys[event.key])
        return not self.quit_requested

    def render(self, force: bool = False):
        fb = self.sys.fb
        if not fb.consume_dirty() and not force:
            return
        pygame = self._pygame
        pygame.surfarray.blit_array(self._surface,
                                    pixels_to_rgb(fb.copy_pixels()))
        scaled = pygame.transform.scale(self._surface,
                                        self._screen.get_size())
        self._screen.blit(scaled, (0, 0))
        pygame.display.flip()
        self.frames += 1


class HeadlessDisplay:
    """No-op display for testing — records framebuffer snapshots."""

    def __init__(self, sys_emu: "ChemuSystem"):
        self.sys = sys_emu
        self.snapshots: list[bytes] = []
        self.quit_requested = False

    def open(self):
        pass

    def close(self):
        pass

    def frame(self):
        if self.sys.fb.consume_dirty():
            self.snapshot()

    def snapshot(self) -> bytes:
        data = self.sys.fb.snapshot()
        self.snapshots.append(data)
        return data

    @property
    def running(self) -> bool:
        return False
