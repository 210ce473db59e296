"""
Shared pytest fixtures for gfs-backup tests.

This module provides fixtures for:
- Backup records and retention counts
- Local backup folders with generation sub-folders
- Mock S3 bucket and storage client (moto)
- A valid backup config
"""

import copy
from datetime import date, timedelta

import pytest
import boto3
from moto import mock_aws

from gfs_backup.backup.naming import BackupRecord, GENERATIONS, join_segments, to_concrete_name
from gfs_backup.backup.retention import RetentionCounts
from gfs_backup.backup.storage import S3Storage
from gfs_backup.config import verify_config


NAME_FORMAT = 'mydb-[DATE].tar.gz'
BUCKET = 'test-bucket'


@pytest.fixture
def name_format():
    return NAME_FORMAT


@pytest.fixture
def counts():
    return RetentionCounts(daily=7, weekly=4, monthly=6)


@pytest.fixture
def make_record():
    """
    Factory building a record from a generation and an ISO date.

    Location is derived from a fake /backups root.
    """
    def _make(generation, iso_date, name_format=NAME_FORMAT):
        day = date.fromisoformat(iso_date)
        name = to_concrete_name(name_format, day)
        folder = join_segments(['/backups', generation])
        return BackupRecord(
            name=name,
            location=join_segments([folder, name]),
            container=folder,
            date=day,
            generation=generation
        )
    return _make


@pytest.fixture
def week_of_dailies(make_record):
    """Seven consecutive daily records, 2019-02-01 down to 2019-01-26."""
    start = date(2019, 2, 1)
    return [make_record('daily', (start - timedelta(days=i)).isoformat()) for i in range(7)]


@pytest.fixture
def local_root(tmp_path):
    """
    Local backup root with daily, weekly and monthly folders.
    """
    root = tmp_path / 'backups'
    root.mkdir()
    for generation in GENERATIONS:
        (root / generation).mkdir()
    return root


@pytest.fixture
def write_backup(local_root):
    """
    Factory writing a backup file into a generation folder of local_root.
    """
    def _write(generation, iso_date, content=b'backup data', name_format=NAME_FORMAT):
        name = to_concrete_name(name_format, date.fromisoformat(iso_date))
        path = local_root / generation / name
        path.write_bytes(content)
        return path
    return _write


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket=BUCKET)
        yield s3


@pytest.fixture
def storage(mock_s3):
    """S3Storage client of the mocked test bucket."""
    return S3Storage(
        access_key='test_access_key',
        secret_key='test_secret_key',
        bucket_name=BUCKET,
        region='us-east-1'
    )


RAW_CONFIG = {
    'db': {
        'user': 'backup',
        'pass': 'secret',
        'name': 'mydb',
        'port': 3306,
        'backup_dest': '/var/backups/db',
        'backup_file_format': 'mydb-[DATE]',
    },
    'files': {
        'source': '/var/www/uploads',
        'backup_dest': '/var/backups/files',
        'backup_file_format': 'uploads-[DATE]',
    },
    'local': {
        'num': {'daily': 7, 'weekly': 4, 'monthly': 3},
    },
    's3': {
        'num': {'daily': 14, 'weekly': 8, 'monthly': 12},
        'access_key_id': 'test_access_key',
        'secret_access_key': 'test_secret_key',
        'bucket': BUCKET,
        'db_prefix': 'db',
        'files_prefix': 'files/',
    },
}


@pytest.fixture
def raw_config():
    """A valid config dict; tests may modify their copy."""
    return copy.deepcopy(RAW_CONFIG)


@pytest.fixture
def backup_config(raw_config, tmp_path):
    """
    Validated config with local destinations under tmp_path.
    """
    raw_config['db']['backup_dest'] = str(tmp_path / 'db')
    raw_config['files']['backup_dest'] = str(tmp_path / 'files')
    raw_config['files']['source'] = str(tmp_path / 'source')
    raw_config['retry'] = {'max_attempts': 2, 'initial_backoff': 0, 'max_backoff': 0}
    return verify_config(raw_config)
