"""
Shared fixtures for the putting speed tests.

Frames are synthetic: a flat grey background with isolated darker dots.
A single dot on a flat background is exactly one FAST corner (all 16
circle samples are brighter than the dot), with strength equal to the
background/dot intensity difference, which makes the expected corner
patterns easy to state.
"""

import logging
import sys
from pathlib import Path

import numpy as np
import pytest

# ---------------------------------------------------------------------------
# Setup: add src/ to path so we can import project modules
# ---------------------------------------------------------------------------
ROOT_DIR = Path(__file__).resolve().parent.parent
SRC_DIR = ROOT_DIR / "src"
sys.path.insert(0, str(SRC_DIR))

BACKGROUND = 200

# Marker pattern: (dx, dy, intensity) relative to the marker point.
# Dots are at least 7 px apart so none lies on another's FAST circle.
MARKER_PATTERN = [
    (-12, -8, 40),
    (7, -11, 70),
    (-5, 9, 100),
    (11, 6, 130),
    (2, 0, 60),
]
MARKER_POINT = (60, 60)


def _dot_frame(width, height, dots, background=BACKGROUND):
    frame = np.full((height, width, 3), background, dtype=np.uint8)
    for x, y, value in dots:
        frame[y, x] = value
    return frame


def _marker_dots(center, shift=(0, 0)):
    cx, cy = center
    return [
        (cx + dx + shift[0], cy + dy + shift[1], value)
        for dx, dy, value in MARKER_PATTERN
    ]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="module")
def dot_frame():
    """Factory: (width, height, [(x, y, value), ...]) -> uint8 frame."""
    return _dot_frame


@pytest.fixture(scope="module")
def marker_frame():
    """200x120 frame with the marker pattern around MARKER_POINT."""
    return _dot_frame(200, 120, _marker_dots(MARKER_POINT))


@pytest.fixture(scope="module")
def shifted_marker_frame():
    """The marker frame with the whole pattern moved 20 px to the right."""
    return _dot_frame(200, 120, _marker_dots(MARKER_POINT, shift=(20, 0)))


@pytest.fixture(scope="module")
def blank_frame():
    return _dot_frame(200, 120, [])


@pytest.fixture
def restore_root_logger():
    """Undo handler/level changes made by setup_logging during a test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    propagate = root.propagate
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    root.propagate = propagate
