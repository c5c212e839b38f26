"""
Pytest configuration for the Chemu test suite.

Display tests open a real pygame window, so SDL is pointed at its dummy
video and audio drivers before anything imports pygame.  Run with:

    python -m pytest
"""

import os

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "realtime: tests that run against the wall clock")
