"""
Backup runner - orchestrates a complete retention run.

Workflow, for each backup kind (database, then files):
1. Local: ensure generation folders, capture if due, promote, expire
2. Remote: ensure bucket, upload youngest local backup if due, promote, expire

Kinds and the local/remote phases run strictly one after the other. Any
error aborts the whole run.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from gfs_backup.config import BackupConfig
from .local import LocalBackups
from .naming import add_extension
from .remote import RemoteBackups
from .retention import RetentionCounts, today_anchor
from .retry import RetryPolicy
from .sources import COMPRESSED_EXTENSION, create_source
from .storage import S3Storage


logger = logging.getLogger(__name__)


KINDS = ('database', 'files')


class BackupRunner:
    """
    Runs the local and remote retention passes of every backup kind.
    """

    def __init__(self, config: BackupConfig, anchor: Optional[date] = None, storage: Optional[S3Storage] = None):
        """
        Initialize backup runner.

        Args:
            config: Validated backup settings
            anchor: Run anchor date (default: today)
            storage: S3 client (default: built from config)
        """
        self.config = config
        self.anchor = anchor or today_anchor()
        self.storage = storage
        self.local_counts = RetentionCounts.from_dict(config.local_num)
        self.remote_counts = RetentionCounts.from_dict(config.remote_num)
        self.policy = RetryPolicy.from_dict(config.retry)
        self.logs = []

    def _settings_for(self, kind: str) -> Dict[str, Any]:
        return self.config.db if kind == 'database' else self.config.files

    def _get_storage(self) -> S3Storage:
        if self.storage is None:
            s3 = self.config.s3
            self.storage = S3Storage(
                access_key=s3['access_key_id'],
                secret_key=s3['secret_access_key'],
                bucket_name=s3['bucket'],
                region=self.config.region,
                endpoint_url=self.config.endpoint
            )
        return self.storage

    def local_backups(self, kind: str) -> LocalBackups:
        settings = self._settings_for(kind)
        return LocalBackups(
            settings['backup_dest'],
            add_extension(settings['backup_file_format'], COMPRESSED_EXTENSION),
            self.local_counts
        )

    def remote_backups(self, kind: str) -> RemoteBackups:
        settings = self._settings_for(kind)
        return RemoteBackups(
            self._get_storage(),
            add_extension(settings['backup_file_format'], COMPRESSED_EXTENSION),
            self.config.prefix_for(kind),
            self.remote_counts,
            self.policy
        )

    def run(self) -> Dict[str, Dict[str, int]]:
        """
        Run all backup kinds.

        Returns:
            Number of backups kept per kind and storage:
            {'database': {'local': int, 'remote': int}, 'files': {...}}

        Raises:
            Exception: Any failure aborts the run and propagates
        """
        self._log(f"Starting backup run (anchor: {self.anchor.isoformat()})")

        summary = {}
        for kind in KINDS:
            summary[kind] = self.run_kind(kind)

        self._log(
            "Backup run complete. " +
            ", ".join(
                f"{kind}: {counts['local']} local, {counts['remote']} remote"
                for kind, counts in summary.items()
            )
        )
        return summary

    def run_kind(self, kind: str) -> Dict[str, int]:
        """
        Run the local then the remote pass of one backup kind.

        Args:
            kind: 'database' or 'files'

        Returns:
            Dict with counts: {'local': int, 'remote': int}
        """
        settings = self._settings_for(kind)
        local = self.local_backups(kind)
        source = create_source(kind, settings, self.anchor, self.config.encryption)

        self._log(f"Local {kind} backups: {settings['backup_dest']}")
        local_records = local.run(self.anchor, source)
        self._log(f"Kept {len(local_records)} local {kind} backups")

        remote = self.remote_backups(kind)

        self._log(f"Remote {kind} backups: {self.config.s3['bucket']}/{self.config.prefix_for(kind)}")
        remote_records = remote.run(self.anchor, local)
        self._log(f"Kept {len(remote_records)} remote {kind} backups")

        return {'local': len(local_records), 'remote': len(remote_records)}

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        log_entry = f"[{timestamp}] {message}"
        self.logs.append(log_entry)
        logger.info(message)


def run_backups(config: BackupConfig, anchor: Optional[date] = None) -> Dict[str, Dict[str, int]]:
    """
    Run every backup kind with a fresh runner.

    Args:
        config: Validated backup settings
        anchor: Run anchor date (default: today)

    Returns:
        Summary dict from BackupRunner.run()
    """
    runner = BackupRunner(config, anchor)
    return runner.run()
