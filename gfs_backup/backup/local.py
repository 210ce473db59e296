"""
Local retention engine.

Keeps backups in three generation folders under a root folder:
{root}/daily, {root}/weekly, {root}/monthly
"""

import os
import shutil
import logging
from pathlib import Path
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Callable, List

from .naming import (
    BackupRecord, DAILY, WEEKLY, MONTHLY, GENERATIONS,
    MalformedNameError, decode, generation_folders, join_segments, sort_youngest_first, to_regex,
)
from .retention import RetentionCounts, get_expired, get_promotions, is_due_today, without
from .sources import CaptureError


logger = logging.getLogger(__name__)


# Local I/O errors are not wrapped; they surface as the OSError subclass raised
FilesystemError = OSError

FOLDER_MODE = 0o770


class LocalBackups:
    """
    Generational backups in the local filesystem.

    Captures, promotes and expires backup files named after name_format.
    """

    def __init__(self, root: str, name_format: str, counts: RetentionCounts):
        """
        Initialize local backups.

        Args:
            root: Folder holding the generation folders
            name_format: Name format of backup files, with a [DATE] token
            counts: Number of backups to keep per generation
        """
        self.root = root
        self.name_format = name_format
        self.counts = counts
        self.folders = generation_folders(root)

    @property
    def daily_folder(self) -> str:
        return self.folders[DAILY]

    def ensure_generation_folders(self):
        """Create the generation folders that do not exist yet."""
        for folder in self.folders.values():
            path = Path(folder)
            if path.is_dir():
                continue
            path.mkdir(mode=FOLDER_MODE, parents=True, exist_ok=True)
            logger.info(f"Created folder: {folder}")

    def _scan_generation(self, generation: str) -> List[BackupRecord]:
        folder = self.folders[generation]
        pattern = to_regex(self.name_format)
        records = []

        for name in sorted(os.listdir(folder)):
            if not pattern.match(name):
                continue
            try:
                records.append(decode(generation, self.name_format, folder, name))
            except MalformedNameError as e:
                logger.warning(f"Skipping {name} in {folder}: {e}")

        return records

    def scan(self) -> List[BackupRecord]:
        """
        List the backups of all generations.

        Returns:
            Records, youngest first

        Raises:
            OSError: If a generation folder cannot be read
        """
        with ThreadPoolExecutor(max_workers=len(GENERATIONS)) as executor:
            results = list(executor.map(self._scan_generation, GENERATIONS))

        return sort_youngest_first(record for records in results for record in records)

    def is_due_today(self, anchor: date, records: List[BackupRecord]) -> bool:
        return is_due_today(anchor, records)

    def capture(self, capture_fn: Callable[[str], str], records: List[BackupRecord]) -> List[BackupRecord]:
        """
        Make a new daily backup.

        Args:
            capture_fn: Callable writing a backup into the folder it is
                given and returning the file's path
            records: Existing records, youngest first

        Returns:
            Records with the new daily backup first

        Raises:
            CaptureError: If capturing fails; a partial file is removed first
        """
        try:
            path = capture_fn(self.daily_folder)
        except CaptureError as e:
            if e.path:
                self._remove_partial(e.path)
            raise

        record = decode(DAILY, self.name_format, self.daily_folder, os.path.basename(path))
        logger.info(f"Captured daily backup: {record.location}")

        return [record] + list(records)

    def _remove_partial(self, path: str):
        # Two tries, then leave it
        for attempt in (1, 2):
            try:
                os.unlink(path)
                logger.info(f"Removed partial backup: {path}")
                return
            except FileNotFoundError:
                return
            except OSError as e:
                logger.warning(f"Failed to remove partial backup {path} (attempt {attempt}): {e}")

    def _promote_one(self, source: BackupRecord, generation: str) -> BackupRecord:
        folder = self.folders[generation]
        location = join_segments([folder, source.name])

        shutil.copyfile(source.location, location)
        logger.info(f"Promoted {source.name} to {generation}")

        return source.promoted(generation, location, folder)

    def promote(self, anchor: date, records: List[BackupRecord]) -> List[BackupRecord]:
        """
        Copy the youngest daily backup into the weekly and monthly folders, if due.

        Args:
            anchor: Run anchor date
            records: Existing records, youngest first

        Returns:
            Records including the promoted copies, youngest first
        """
        promotions = get_promotions(anchor, self.counts, records)
        targets = [
            (source, generation)
            for source, generation in ((promotions.weekly, WEEKLY), (promotions.monthly, MONTHLY))
            if source is not None
        ]

        if not targets:
            return list(records)

        with ThreadPoolExecutor(max_workers=len(targets)) as executor:
            futures = [executor.submit(self._promote_one, source, generation) for source, generation in targets]
            promoted = [future.result() for future in futures]

        return sort_youngest_first(list(records) + promoted)

    def expire(self, records: List[BackupRecord]) -> List[BackupRecord]:
        """
        Delete the backups beyond each generation's quota.

        Args:
            records: Existing records, youngest first

        Returns:
            Remaining records, youngest first
        """
        expired = get_expired(self.counts, records)

        for record in expired:
            os.unlink(record.location)
            logger.info(f"Deleted expired {record.generation} backup: {record.location}")

        return without(records, expired)

    def run(self, anchor: date, capture_fn: Callable[[str], str]) -> List[BackupRecord]:
        """
        Run a full retention pass: capture if due, promote, expire.

        Args:
            anchor: Run anchor date
            capture_fn: Capture callable, see capture()

        Returns:
            Records left after the pass, youngest first
        """
        self.ensure_generation_folders()
        records = self.scan()
        logger.info(f"Found {len(records)} local backups in {self.root}")

        if self.is_due_today(anchor, records):
            records = self.capture(capture_fn, records)
        else:
            logger.info("Local daily backup already made today, skipping capture")

        records = self.promote(anchor, records)
        return self.expire(records)
