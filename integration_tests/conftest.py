"""Pytest configuration for integration tests.

Integration tests drive a real ffmpeg binary and are skipped when none is on
PATH (or at FFMPEG_PATH).
"""

import os
import shutil

import pytest


@pytest.fixture(scope="session")
def ffmpeg_path() -> str:
    path = shutil.which(os.environ.get("FFMPEG_PATH") or "ffmpeg")
    if path is None:
        pytest.skip("ffmpeg not installed")
    return path
