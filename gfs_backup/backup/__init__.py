"""
Backup module for gfs-backup.

This module handles the core backup functionality including:
- Naming of backup files and objects
- Retention decisions (due check, promotion, expiration)
- Capture of database dumps and file archives
- Local and S3 retention engines
- Run orchestration
"""

from .naming import BackupRecord, MalformedNameError
from .retention import RetentionCounts, today_anchor
from .retry import RetryPolicy, with_retry, list_all
from .storage import S3Storage, RemoteError, RemoteTransientError
from .pipeline import Stage, PipelineError, run_pipeline
from .sources import DatabaseSource, FilesSource, CaptureError, create_source
from .local import LocalBackups, FilesystemError
from .remote import RemoteBackups, NoLocalBackupError
from .runner import BackupRunner, run_backups

__all__ = [
    'BackupRecord',
    'MalformedNameError',
    'RetentionCounts',
    'today_anchor',
    'RetryPolicy',
    'with_retry',
    'list_all',
    'S3Storage',
    'RemoteError',
    'RemoteTransientError',
    'Stage',
    'PipelineError',
    'run_pipeline',
    'DatabaseSource',
    'FilesSource',
    'CaptureError',
    'create_source',
    'LocalBackups',
    'FilesystemError',
    'RemoteBackups',
    'NoLocalBackupError',
    'BackupRunner',
    'run_backups'
]
