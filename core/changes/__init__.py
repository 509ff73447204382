"""
Change detection for terminal-stage output.
"""

from .fingerprint import ChangeKey, fingerprint
from .detector import ChangeDetector, DiffResult, diff_snapshots

__all__ = [
    "ChangeKey",
    "fingerprint",
    "ChangeDetector",
    "DiffResult",
    "diff_snapshots"
]
