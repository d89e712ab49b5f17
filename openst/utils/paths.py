"""Filesystem path helpers for openst state."""

from __future__ import annotations

import os
from pathlib import Path


def state_dir() -> Path:
    """Return the directory used for persistent openst state.

    The location defaults to ``~/.openst`` but can be overridden via the
    ``OPENST_STATE_DIR`` environment variable. The path is expanded and
    resolved so callers always receive an absolute location.
    """

    override = os.environ.get("OPENST_STATE_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return Path.home() / ".openst"


def artifacts_dir() -> Path:
    """Directory holding the contract artifacts bundled with the package."""

    return Path(__file__).resolve().parents[1] / "contracts"
