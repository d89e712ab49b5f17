"""Utility helpers exposed by openst."""

from .paths import artifacts_dir, state_dir

__all__ = ["artifacts_dir", "state_dir"]
