"""
Polling Change Detector

This module scans the configured watch targets, keeps a snapshot of the
matching files (modification time and size) and reports whether anything
changed since the previous scan.
"""

import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchTarget:
    """A directory plus the file extensions (or exact file names) to include."""

    directory: Path
    extensions: frozenset[str] = field(default_factory=frozenset)
    recursive: bool = True
    names: frozenset[str] = field(default_factory=frozenset)

    def __init__(
        self,
        directory: Path | str,
        extensions: Iterable[str] = (),
        recursive: bool = True,
        names: Iterable[str] = (),
    ) -> None:
        """Initialize WatchTarget with path conversion and extension normalisation."""
        object.__setattr__(self, "directory", Path(directory).absolute())
        object.__setattr__(self, "extensions", frozenset(normalize_extension(ext) for ext in extensions))
        object.__setattr__(self, "recursive", recursive)
        object.__setattr__(self, "names", frozenset(names))

    @classmethod
    def for_file(cls, file_path: Path | str) -> "WatchTarget":
        """Watch a single file through its parent directory."""
        file_path = Path(file_path).absolute()
        return cls(file_path.parent, recursive=False, names=[file_path.name])

    def matches(self, file_path: Path) -> bool:
        """Check if a file name matches the name and extension filters (empty filters match everything)."""
        if self.names and file_path.name not in self.names:
            return False
        if not self.extensions:
            return True
        return file_path.suffix.lower() in self.extensions

    def contains(self, file_path: Path) -> bool:
        """Check if a path lives under this target's directory."""
        try:
            relative = file_path.relative_to(self.directory)
        except ValueError:
            return False
        return self.recursive or len(relative.parts) == 1


def normalize_extension(extension: str) -> str:
    """Normalise ``py``, ``.PY`` and ``.py`` to ``.py``."""
    extension = extension.strip().lower()
    if not extension:
        raise ValueError("Extension must not be empty")
    return extension if extension.startswith(".") else f".{extension}"


@dataclass(frozen=True)
class FileStat:
    """Last observed metadata of a watched file."""

    mtime_ns: int
    size: int


FileSnapshot = dict[Path, FileStat]


@dataclass
class ChangeEvent:
    """Represents the changes found by one scan."""

    timestamp: float
    created: frozenset[Path] = frozenset()
    modified: frozenset[Path] = frozenset()
    deleted: frozenset[Path] = frozenset()

    @property
    def paths(self) -> frozenset[Path]:
        return self.created | self.modified | self.deleted

    def describe(self, limit: int = 5) -> str:
        """Short human readable summary used in log lines."""
        parts = []
        for label, paths in (("created", self.created), ("modified", self.modified), ("deleted", self.deleted)):
            if not paths:
                continue
            names = sorted(str(p) for p in paths)
            shown = ", ".join(names[:limit])
            if len(names) > limit:
                shown += f" (+{len(names) - limit} more)"
            parts.append(f"{label}: {shown}")
        return "; ".join(parts)


class ScanError(Exception):
    """A watched directory could not be read during a scan."""

    def __init__(self, directory: Path, error: OSError) -> None:
        super().__init__(f"Cannot scan {directory}: {error}")
        self.directory = directory
        self.error = error


@dataclass
class ScanResult:
    """Result of a single scan."""

    changed: bool
    snapshot: FileSnapshot
    event: ChangeEvent | None = None
    errors: list[ScanError] = field(default_factory=list)


def diff_snapshots(
    old: FileSnapshot, new: FileSnapshot
) -> tuple[frozenset[Path], frozenset[Path], frozenset[Path]]:
    """
    Compare two snapshots.

    Args:
        old: Snapshot from the previous scan
        new: Snapshot from the current scan

    Returns:
        Tuple of (created, modified, deleted) paths
    """
    created = frozenset(path for path in new if path not in old)
    deleted = frozenset(path for path in old if path not in new)
    modified = frozenset(path for path, stat in new.items() if path in old and old[path] != stat)
    return created, modified, deleted


class ChangeDetector:
    """
    Stat based change detector for a set of watch targets.

    The first scan primes the snapshot and never reports a change. Each later
    scan builds a fresh snapshot, compares it with the previous one and
    replaces it.
    """

    def __init__(
        self,
        targets: Iterable[WatchTarget],
        delete_is_change: bool = True,
        ignore_pattern: str | None = None,
        ignored_files: Iterable[Path] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the change detector.

        Args:
            targets: Directories and extension filters to watch
            delete_is_change: Whether a removed file counts as a change
            ignore_pattern: Regular expression matched against full paths to skip
            ignored_files: Exact files never reported (e.g. the config file)
            clock: Wall clock used to timestamp change events
        """
        self.targets = list(targets)
        self.delete_is_change = delete_is_change
        self.ignore_regex = re.compile(ignore_pattern) if ignore_pattern else None
        self.ignored_files = {Path(p).absolute() for p in ignored_files}
        self.clock = clock

        self._snapshot: FileSnapshot = {}
        self._primed = False

    @property
    def snapshot(self) -> FileSnapshot:
        return self._snapshot

    @property
    def primed(self) -> bool:
        return self._primed

    def is_ignored(self, path: Path) -> bool:
        """Check if a path is excluded by the ignore pattern or the ignored files."""
        if path in self.ignored_files:
            return True
        return bool(self.ignore_regex and self.ignore_regex.search(str(path)))

    def scan(self, targets: Iterable[WatchTarget] | None = None) -> ScanResult:
        """
        Scan the watch targets and compare against the previous snapshot.

        Args:
            targets: Targets to scan, defaults to the configured ones

        Returns:
            ScanResult with the new snapshot; the snapshot is stored even when
            nothing changed or some directories failed
        """
        targets = self.targets if targets is None else list(targets)
        logger.debug(f"Scanning {len(targets)} watch target(s)")

        new_snapshot: FileSnapshot = {}
        errors: list[ScanError] = []
        for target in targets:
            errors.extend(self._scan_target(target, new_snapshot))

        # Keep tracking files below directories that could not be read this tick
        for error in errors:
            for path, stat in self._snapshot.items():
                if path not in new_snapshot and _is_relative_to(path, error.directory):
                    new_snapshot[path] = stat

        for error in errors:
            logger.warning(f"Skipping unreadable directory {error.directory}: {error.error}")

        return self._commit(new_snapshot, errors)

    def _commit(self, new_snapshot: FileSnapshot, errors: list[ScanError]) -> ScanResult:
        old_snapshot = self._snapshot
        self._snapshot = new_snapshot

        if not self._primed:
            self._primed = True
            logger.debug(f"Initial scan found {len(new_snapshot)} file(s)")
            return ScanResult(changed=False, snapshot=new_snapshot, errors=errors)

        created, modified, deleted = diff_snapshots(old_snapshot, new_snapshot)
        if not self.delete_is_change:
            if deleted:
                logger.debug(f"Ignoring {len(deleted)} deleted file(s)")
            deleted = frozenset()

        if not (created or modified or deleted):
            logger.debug(f"No changes across {len(new_snapshot)} file(s)")
            return ScanResult(changed=False, snapshot=new_snapshot, errors=errors)

        event = ChangeEvent(timestamp=self.clock(), created=created, modified=modified, deleted=deleted)
        logger.info(f"Change detected ({event.describe()})")
        return ScanResult(changed=True, snapshot=new_snapshot, event=event, errors=errors)

    def _scan_target(self, target: WatchTarget, snapshot: FileSnapshot) -> list[ScanError]:
        """Walk one target, adding matching files to ``snapshot``."""
        errors: list[ScanError] = []
        pending = [target.directory]

        while pending:
            directory = pending.pop()
            try:
                with os.scandir(directory) as entries:
                    for entry in entries:
                        path = Path(entry.path)
                        if self.is_ignored(path):
                            continue
                        try:
                            if entry.is_dir(follow_symlinks=False):
                                if target.recursive:
                                    pending.append(path)
                                continue
                            if not entry.is_file() or not target.matches(path):
                                continue
                            stat = entry.stat()
                        except FileNotFoundError:
                            # Removed between listing and stat, treated as deleted
                            continue
                        snapshot[path] = FileStat(mtime_ns=stat.st_mtime_ns, size=stat.st_size)
            except FileNotFoundError as e:
                if directory == target.directory:
                    errors.append(ScanError(directory, e))
                # A vanished subdirectory simply has no files left
            except OSError as e:
                errors.append(ScanError(directory, e))

        return errors


def _is_relative_to(path: Path, directory: Path) -> bool:
    try:
        path.relative_to(directory)
    except ValueError:
        return False
    return True
