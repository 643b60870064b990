"""Append-only CSV audit trail partitioned into day-directories.

Layout: ``<root>/<YYYY-MM-DD>/<filename>``. Every failure in here is
logged as a warning and swallowed; losing an audit row must never take the
serial session or a capture command down with it.
"""

from __future__ import annotations

import csv
import logging
import re
import shutil
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Optional, Sequence, TextIO

from . import constants
from .utils import day_folder

LOGGER = logging.getLogger(__name__)

_DAY_DIR = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def prune_day_directories(root: Path, retention_days: int, *, today: date) -> list[Path]:
    """Delete ``YYYY-MM-DD`` sub-directories older than ``retention_days``."""

    removed: list[Path] = []
    if not root.is_dir():
        return removed

    for entry in root.iterdir():
        if not entry.is_dir() or not _DAY_DIR.match(entry.name):
            continue
        try:
            folder_day = datetime.strptime(entry.name, "%Y-%m-%d").date()
        except ValueError:
            continue
        if (today - folder_day).days <= retention_days:
            continue
        try:
            shutil.rmtree(entry)
        except OSError as exc:
            LOGGER.warning("Failed to remove expired directory %s: %s", entry, exc)
        else:
            removed.append(entry)
            LOGGER.info("Removed expired directory %s", entry)

    return removed


class DailyCsvLog:
    """One CSV file per calendar day with a header row written once."""

    def __init__(
        self,
        root: Path,
        filename: str,
        header: Sequence[str],
        *,
        retention_days: int = constants.AUDIT_RETENTION_DAYS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._root = root
        self._filename = filename
        self._header = tuple(header)
        self._retention_days = retention_days
        self._clock = clock
        self._stream: Optional[TextIO] = None
        self._writer: Optional[object] = None
        self._day: Optional[date] = None
        self._pruned_day: Optional[date] = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def current_path(self) -> Path:
        return self._path_for(self._day or self._clock().date())

    def _path_for(self, day: date) -> Path:
        return self._root / day_folder(day) / self._filename

    def open(self) -> None:
        """(Re)open today's file for appending and prune expired day-directories."""

        self.close()
        today = self._clock().date()
        path = self._path_for(today)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            is_new = not path.exists() or path.stat().st_size == 0
            stream = path.open("a", encoding="utf-8", newline="")
            if is_new:
                csv.writer(stream).writerow(self._header)
                stream.flush()
        except OSError as exc:
            LOGGER.warning("Cannot open CSV log %s: %s", path, exc)
            return

        self._stream = stream
        self._writer = csv.writer(stream)
        self._day = today
        self._prune(today, force=True)
        LOGGER.info("Writing %s to %s", self._filename, path)

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        self._writer = None
        if stream is None:
            return
        try:
            stream.close()
        except OSError as exc:
            LOGGER.warning("Error closing CSV log %s: %s", self._filename, exc)

    def write_row(self, row: Sequence[object]) -> None:
        """Append a row to the open file, rolling over at midnight."""

        if self._stream is None:
            return
        if self._clock().date() != self._day:
            self.open()
            if self._stream is None:
                return
        try:
            self._writer.writerow(row)  # type: ignore[union-attr]
            self._stream.flush()
        except (OSError, ValueError) as exc:
            LOGGER.warning("Failed to write %s row: %s", self._filename, exc)

    def append_row(self, row: Sequence[object]) -> None:
        """Open, append one row and close again."""

        today = self._clock().date()
        path = self._path_for(today)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            is_new = not path.exists() or path.stat().st_size == 0
            with path.open("a", encoding="utf-8", newline="") as stream:
                writer = csv.writer(stream)
                if is_new:
                    writer.writerow(self._header)
                writer.writerow(row)
        except OSError as exc:
            LOGGER.warning("Failed to append to %s: %s", path, exc)
            return
        self._prune(today)

    def _prune(self, today: date, *, force: bool = False) -> None:
        if self._pruned_day == today and not force:
            return
        self._pruned_day = today
        try:
            prune_day_directories(self._root, self._retention_days, today=today)
        except OSError as exc:
            LOGGER.warning("Failed to prune %s: %s", self._root, exc)
