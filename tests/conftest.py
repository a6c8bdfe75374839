"""
conftest.py — Shared fixtures for pic32_hid_flasher tests.
"""
import sys
from pathlib import Path

import pytest

# Ensure the parent directory is on sys.path so we can import the main module
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


# Two contiguous records at $9D008000 and one isolated byte at $9D008010
SAMPLE_HEX_LINES = [
    ":020000041D00DD",
    ":048000000102030472",
    ":02800400AABB15",
    ":01801000551A",
    ":00000001FF",
]


@pytest.fixture
def sample_hex_lines() -> list:
    return list(SAMPLE_HEX_LINES)


@pytest.fixture
def sample_hex_path(tmp_path) -> Path:
    """Small PIC32 application image written to tmp_path."""
    p = tmp_path / "app.hex"
    p.write_text("\n".join(SAMPLE_HEX_LINES) + "\n", encoding="ascii")
    return p
