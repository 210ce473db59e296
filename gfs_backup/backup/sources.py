"""
Capture sources for backup operations.

Supports:
- DatabaseSource: Dump a MySQL/MariaDB database with mysqldump
- FilesSource: Archive a folder with tar

Both compress with gzip and can encrypt with openssl before writing a single
file named after the run's date into a destination folder.
"""

import os
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from .naming import add_extension, join_segments, to_concrete_name
from .pipeline import Stage, PipelineError, run_pipeline


logger = logging.getLogger(__name__)


COMPRESSED_EXTENSION = 'tar.gz'
DEFAULT_ENCRYPTION_ITERATION_COUNT = 2000000

# openssl reads the passphrase from this environment variable
ENCRYPTION_KEY_ENV = 'GFS_BACKUP_SYMMETRIC_KEY'


class CaptureError(Exception):
    """
    Raised when a capture pipeline fails.

    Attributes:
        path: Destination file that may have been partially written
    """

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


def encryption_stage(symmetric_key: Optional[str], iteration_count: Optional[int] = None) -> Optional[Stage]:
    """
    Build an openssl stage encrypting its input with a symmetric key.

    Args:
        symmetric_key: Key to encrypt with (256 bits, base64); None to skip
        iteration_count: PBKDF2 iterations (default: 2000000)

    Returns:
        Stage, or None if no key was given
    """
    if not symmetric_key:
        return None

    iteration_count = iteration_count or DEFAULT_ENCRYPTION_ITERATION_COUNT

    return Stage(
        [
            'openssl', 'enc',
            '-aes-256-cbc',
            '-pbkdf2',
            '-iter', str(iteration_count),
            '-salt',
            '-pass', f"env:{ENCRYPTION_KEY_ENV}",
        ],
        env=dict(os.environ, **{ENCRYPTION_KEY_ENV: symmetric_key}),
    )


class _PipelineSource:
    """Shared capture logic: run stages into a dated file in the destination folder."""

    def __init__(self, name_format: str, today: date, symmetric_key: Optional[str] = None,
                 encryption_iteration_count: Optional[int] = None):
        self.name_format = add_extension(name_format, COMPRESSED_EXTENSION)
        self.today = today
        self.symmetric_key = symmetric_key
        self.encryption_iteration_count = encryption_iteration_count

    def stages(self) -> List[Stage]:
        raise NotImplementedError

    def _all_stages(self) -> List[Stage]:
        stages = self.stages()
        stages.append(Stage(['gzip', '-']))
        encrypt = encryption_stage(self.symmetric_key, self.encryption_iteration_count)
        if encrypt:
            stages.append(encrypt)
        return stages

    def acquire(self, dest_folder: str) -> str:
        """
        Capture a backup into the destination folder.

        Args:
            dest_folder: Folder to write the backup file into

        Returns:
            Path of the backup file

        Raises:
            CaptureError: If any stage of the capture fails
            OSError: If the destination file cannot be created
        """
        dest_path = join_segments([dest_folder, to_concrete_name(self.name_format, self.today)])
        stages = self._all_stages()

        logger.info(f"Capturing {dest_path} ({' | '.join(x.name for x in stages)})")

        with open(dest_path, 'wb') as dest:
            try:
                run_pipeline(stages, dest)
            except PipelineError as e:
                raise CaptureError(f"Failed to capture {dest_path}: {e}", path=dest_path) from e

        return dest_path

    __call__ = acquire


class DatabaseSource(_PipelineSource):
    """
    Capture a MySQL or MariaDB database with mysqldump.
    """

    def __init__(self, config: Dict[str, Any], today: date, symmetric_key: Optional[str] = None,
                 encryption_iteration_count: Optional[int] = None):
        """
        Initialize database source.

        Args:
            config: Database settings dict with keys:
                - user: Database username
                - pass: Database password
                - name: Database name
                - host: Database host (default localhost)
                - port: Database port
                - backup_file_format: Name format of backup files
                - is_mariadb: True when dumping a MariaDB server
            today: Run anchor date
            symmetric_key: Optional encryption key
            encryption_iteration_count: Optional PBKDF2 iterations
        """
        super().__init__(config['backup_file_format'], today, symmetric_key, encryption_iteration_count)
        self.user = config['user']
        self.password = config['pass']
        self.name = config['name']
        self.host = config.get('host') or 'localhost'
        self.port = config['port']
        self.is_mariadb = bool(config.get('is_mariadb', False))

    def stages(self) -> List[Stage]:
        args = [
            'mysqldump',
            # Creating tablespaces needs privileges most backup users lack
            '--no-tablespaces',
        ]
        # MariaDB's mysqldump has no such flag; MySQL fails without it under GTID replication
        if not self.is_mariadb:
            args.append('--set-gtid-purged=OFF')
        args.extend([
            '-h', str(self.host),
            '-u', str(self.user),
            '-P', str(self.port),
            str(self.name),
        ])

        return [Stage(args, env=dict(os.environ, MYSQL_PWD=str(self.password)))]


class FilesSource(_PipelineSource):
    """
    Capture a folder as a tar archive.

    The archive holds the folder by its base name, not its full path.
    """

    def __init__(self, config: Dict[str, Any], today: date, symmetric_key: Optional[str] = None,
                 encryption_iteration_count: Optional[int] = None):
        """
        Initialize files source.

        Args:
            config: Files settings dict with keys:
                - source: Folder to back up
                - backup_file_format: Name format of backup files
            today: Run anchor date
            symmetric_key: Optional encryption key
            encryption_iteration_count: Optional PBKDF2 iterations
        """
        super().__init__(config['backup_file_format'], today, symmetric_key, encryption_iteration_count)
        self.source_folder = os.path.abspath(config['source'])

    def stages(self) -> List[Stage]:
        parent = os.path.dirname(self.source_folder.rstrip(os.sep)) or os.sep
        basename = os.path.basename(self.source_folder.rstrip(os.sep))

        # tar fails when files change while being read, which is expected on a live folder
        return [Stage(['tar', '--warning=no-file-changed', '-cf', '-', basename], cwd=parent)]


def create_source(kind: str, config: Dict[str, Any], today: date, encryption: Optional[Dict[str, Any]] = None):
    """
    Factory function to create appropriate capture source.

    Args:
        kind: 'database' or 'files'
        config: Settings section for the kind
        today: Run anchor date
        encryption: Optional dict with symmetric_key and iteration_count

    Returns:
        DatabaseSource or FilesSource instance

    Raises:
        ValueError: If kind is invalid
    """
    encryption = encryption or {}
    symmetric_key = encryption.get('symmetric_key')
    iteration_count = encryption.get('iteration_count')

    if kind == 'database':
        return DatabaseSource(config, today, symmetric_key, iteration_count)
    elif kind == 'files':
        return FilesSource(config, today, symmetric_key, iteration_count)
    else:
        raise ValueError(f"Invalid backup kind: {kind}")
