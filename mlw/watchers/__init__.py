"""
File watching utilities for mlw.

This module provides the change detectors that scan the watch targets and the
debouncer that turns bursts of changes into single restart triggers.
"""

from mlw.watchers.debounce import Debouncer
from mlw.watchers.file_watcher import (
    ChangeDetector,
    ChangeEvent,
    FileSnapshot,
    FileStat,
    ScanError,
    ScanResult,
    WatchTarget,
    diff_snapshots,
)

__all__ = [
    "ChangeDetector",
    "ChangeEvent",
    "Debouncer",
    "FileSnapshot",
    "FileStat",
    "ScanError",
    "ScanResult",
    "WatchTarget",
    "diff_snapshots",
]
