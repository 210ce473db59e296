"""
Unit tests for the backup runner (gfs_backup/backup/runner.py).

Captures are faked; local folders live under tmp_path and the bucket is
mocked with moto.
"""

import os
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from gfs_backup.backup.naming import add_extension, to_concrete_name
from gfs_backup.backup.runner import BackupRunner, run_backups
from gfs_backup.backup.sources import CaptureError, DatabaseSource, FilesSource
from gfs_backup.backup.storage import RemoteError


ANCHOR = date(2019, 2, 1)


def fake_create_source(kind, settings, today, encryption=None):
    name_format = add_extension(settings['backup_file_format'], 'tar.gz')

    def _capture(folder):
        path = os.path.join(folder, to_concrete_name(name_format, today))
        with open(path, 'wb') as f:
            f.write(f"{kind} backup".encode())
        return path
    return _capture


def keys(mock_s3):
    return sorted(x.key for x in mock_s3.Bucket('test-bucket').objects.all())


class TestBackupRunner:
    """Test full runs over both backup kinds."""

    @patch('gfs_backup.backup.runner.create_source', side_effect=fake_create_source)
    def test_run(self, mock_create, backup_config, mock_s3, tmp_path):
        runner = BackupRunner(backup_config, anchor=ANCHOR)

        summary = runner.run()

        assert summary == {
            'database': {'local': 3, 'remote': 3},
            'files': {'local': 3, 'remote': 3},
        }
        assert sorted(os.listdir(tmp_path / 'db' / 'daily')) == ['mydb-20190201.tar.gz']
        assert sorted(os.listdir(tmp_path / 'files' / 'monthly')) == ['uploads-20190201.tar.gz']
        assert keys(mock_s3) == [
            'db/daily/mydb-20190201.tar.gz',
            'db/monthly/mydb-20190201.tar.gz',
            'db/weekly/mydb-20190201.tar.gz',
            'files/daily/uploads-20190201.tar.gz',
            'files/monthly/uploads-20190201.tar.gz',
            'files/weekly/uploads-20190201.tar.gz',
        ]
        assert [c.args[0] for c in mock_create.call_args_list] == ['database', 'files']

    @patch('gfs_backup.backup.runner.create_source', side_effect=fake_create_source)
    def test_run_logs(self, mock_create, backup_config, mock_s3):
        runner = BackupRunner(backup_config, anchor=ANCHOR)

        runner.run()

        assert runner.logs[0].endswith('Starting backup run (anchor: 2019-02-01)')
        assert 'Backup run complete' in runner.logs[-1]
        assert all(x.startswith('[') for x in runner.logs)

    @patch('gfs_backup.backup.runner.create_source', side_effect=fake_create_source)
    def test_second_run_is_idempotent(self, mock_create, backup_config, mock_s3, tmp_path):
        BackupRunner(backup_config, anchor=ANCHOR).run()
        before = keys(mock_s3)

        summary = run_backups(backup_config, anchor=ANCHOR)

        assert keys(mock_s3) == before
        assert summary['database'] == {'local': 3, 'remote': 3}

    def test_capture_failure_aborts_run(self, backup_config, mock_s3):
        failing = MagicMock(side_effect=CaptureError('mysqldump: Access denied'))

        with patch('gfs_backup.backup.runner.create_source', return_value=failing) as mock_create:
            with pytest.raises(CaptureError):
                BackupRunner(backup_config, anchor=ANCHOR).run()

        assert mock_create.call_count == 1
        assert keys(mock_s3) == []

    @patch('gfs_backup.backup.runner.create_source', side_effect=fake_create_source)
    def test_remote_failure_aborts_run(self, mock_create, backup_config):
        storage = MagicMock()
        storage.ensure_bucket.side_effect = RemoteError('AccessDenied')

        with pytest.raises(RemoteError):
            BackupRunner(backup_config, anchor=ANCHOR, storage=storage).run()

        assert mock_create.call_count == 1

    def test_defaults_to_today(self, backup_config):
        with patch('gfs_backup.backup.runner.today_anchor', return_value=ANCHOR):
            runner = BackupRunner(backup_config)

        assert runner.anchor == ANCHOR


class TestEngines:
    """Test engines built from the config."""

    def test_local_backups(self, backup_config, tmp_path):
        local = BackupRunner(backup_config, anchor=ANCHOR).local_backups('files')

        assert local.root == str(tmp_path / 'files')
        assert local.name_format == 'uploads-[DATE].tar.gz'
        assert local.counts.weekly == 4

    def test_remote_backups(self, backup_config, mock_s3):
        remote = BackupRunner(backup_config, anchor=ANCHOR).remote_backups('database')

        assert remote.prefix == 'db'
        assert remote.name_format == 'mydb-[DATE].tar.gz'
        assert remote.counts.daily == 14
        assert remote.policy.max_attempts == 2
        assert remote.storage.bucket_name == 'test-bucket'

    @pytest.mark.parametrize('kind, source_class', [('database', DatabaseSource), ('files', FilesSource)])
    def test_real_sources_are_used(self, backup_config, kind, source_class):
        runner = BackupRunner(backup_config, anchor=ANCHOR)
        local = MagicMock()
        local.run.side_effect = RuntimeError('stop')

        with patch.object(runner, 'local_backups', return_value=local):
            with pytest.raises(RuntimeError):
                runner.run_kind(kind)

        source = local.run.call_args.args[1]
        assert isinstance(source, source_class)
        assert source.today == ANCHOR
