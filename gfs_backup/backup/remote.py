"""
Remote retention engine.

Mirrors the local engine against an S3 bucket, with keys laid out as
{prefix}/daily/{name}, {prefix}/weekly/{name}, {prefix}/monthly/{name}.
Every call to the store is retried when rate limited.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import List

from .local import LocalBackups
from .naming import (
    BackupRecord, DAILY, WEEKLY, MONTHLY, GENERATIONS,
    MalformedNameError, decode_key, generation_prefixes, key_regex, object_key, sort_youngest_first,
)
from .retention import RetentionCounts, get_expired, get_promotions, is_due_today, without
from .retry import DEFAULT_POLICY, RetryPolicy, list_all, with_retry
from .storage import MAX_DELETE_KEYS, S3Storage


logger = logging.getLogger(__name__)


class NoLocalBackupError(Exception):
    """Raised when uploading to remote storage with no local backup to upload."""
    pass


class RemoteBackups:
    """
    Generational backups in an S3 bucket.
    """

    def __init__(self, storage: S3Storage, name_format: str, prefix: str, counts: RetentionCounts,
                 policy: RetryPolicy = DEFAULT_POLICY):
        """
        Initialize remote backups.

        Args:
            storage: Client of the bucket
            name_format: Name format of backup objects, with a [DATE] token
            prefix: Key prefix the generation prefixes live under
            counts: Number of backups to keep per generation
            policy: Retry policy for rate-limited calls
        """
        self.storage = storage
        self.name_format = name_format
        self.prefix = prefix
        self.counts = counts
        self.policy = policy
        self.prefixes = generation_prefixes(prefix)

    def _retry(self, operation):
        return with_retry(
            operation,
            max_attempts=self.policy.max_attempts,
            initial_backoff=self.policy.initial_backoff,
            max_backoff=self.policy.max_backoff,
        )

    def ensure_bucket(self):
        self._retry(self.storage.ensure_bucket)

    def _list_generation(self, generation: str) -> List[BackupRecord]:
        pattern = key_regex(self.name_format, self.prefix, generation)
        # Trailing separator keeps "daily" from also listing e.g. "daily-old/"
        keys = list_all(self.storage.list_page, {'prefix': self.prefixes[generation] + '/'}, self.policy)

        records = []
        for key in keys:
            if not pattern.match(key):
                continue
            try:
                records.append(decode_key(generation, self.name_format, self.prefix, key))
            except MalformedNameError as e:
                logger.warning(f"Skipping object {key}: {e}")

        return records

    def list(self) -> List[BackupRecord]:
        """
        List the backups of all generations.

        Returns:
            Records, youngest first

        Raises:
            RemoteError: If listing fails
        """
        with ThreadPoolExecutor(max_workers=len(GENERATIONS)) as executor:
            results = list(executor.map(self._list_generation, GENERATIONS))

        return sort_youngest_first(record for records in results for record in records)

    def is_due_today(self, anchor: date, records: List[BackupRecord]) -> bool:
        return is_due_today(anchor, records)

    def upload_youngest_local(self, local: LocalBackups) -> BackupRecord:
        """
        Upload the youngest local backup as a daily backup.

        Args:
            local: Local backups to take the file from

        Returns:
            Record of the uploaded object

        Raises:
            NoLocalBackupError: If there are no local backups
            RemoteError: If the upload fails
        """
        local_records = local.scan()
        if not local_records:
            raise NoLocalBackupError('Cannot copy local backup to remote because there are no local backups.')

        youngest = local_records[0]
        key = object_key(self.prefix, DAILY, youngest.name)

        self._retry(lambda: self.storage.put_object(key, youngest.location))
        logger.info(f"Uploaded {youngest.location} to {key}")

        return decode_key(DAILY, self.name_format, self.prefix, key)

    def _promote_one(self, source: BackupRecord, generation: str) -> BackupRecord:
        key = object_key(self.prefix, generation, source.name)

        self._retry(lambda: self.storage.copy_object(source.location, key))
        logger.info(f"Promoted {source.location} to {key}")

        return source.promoted(generation, key, self.prefixes[generation])

    def promote(self, anchor: date, records: List[BackupRecord]) -> List[BackupRecord]:
        """
        Copy the youngest daily backup into the weekly and monthly prefixes, if due.

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
        keys = [x.location for x in expired]

        for start in range(0, len(keys), MAX_DELETE_KEYS):
            batch = keys[start:start + MAX_DELETE_KEYS]
            self._retry(lambda: self.storage.delete_objects(batch))
            logger.info(f"Deleted {len(batch)} expired objects: {', '.join(batch)}")

        return without(records, expired)

    def run(self, anchor: date, local: LocalBackups) -> List[BackupRecord]:
        """
        Run a full retention pass: upload if due, promote, expire.

        Args:
            anchor: Run anchor date
            local: Local backups the upload is taken from

        Returns:
            Records left after the pass, youngest first
        """
        self.ensure_bucket()
        records = self.list()
        logger.info(f"Found {len(records)} remote backups under {self.prefix}")

        if self.is_due_today(anchor, records):
            uploaded = self.upload_youngest_local(local)
            records = sort_youngest_first([uploaded] + without(records, [uploaded]))
        else:
            logger.info("Remote daily backup already made today, skipping upload")

        records = self.promote(anchor, records)
        return self.expire(records)
