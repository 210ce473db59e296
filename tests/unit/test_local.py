"""
Unit tests for the local retention engine (gfs_backup/backup/local.py).

Uses real generation folders under tmp_path and fake capture callables.
"""

import os
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from gfs_backup.backup.local import LocalBackups
from gfs_backup.backup.naming import to_concrete_name
from gfs_backup.backup.retention import RetentionCounts
from gfs_backup.backup.sources import CaptureError


ANCHOR = date(2019, 2, 1)


def fake_capture(day=ANCHOR, content=b'new backup', name_format='mydb-[DATE].tar.gz'):
    """Build a capture callable writing a dated file into the folder it is given."""
    def _capture(folder):
        path = os.path.join(folder, to_concrete_name(name_format, day))
        with open(path, 'wb') as f:
            f.write(content)
        return path
    return MagicMock(side_effect=_capture)


def names(folder):
    return sorted(os.listdir(folder))


class TestScan:
    """Test listing local backups."""

    def test_scan_all_generations(self, local_root, write_backup, name_format, counts):
        write_backup('daily', '2019-01-31')
        write_backup('weekly', '2019-01-28')
        write_backup('monthly', '2019-01-02')
        write_backup('daily', '2019-01-30')

        records = LocalBackups(str(local_root), name_format, counts).scan()

        assert [(x.generation, x.date.isoformat()) for x in records] == [
            ('daily', '2019-01-31'),
            ('daily', '2019-01-30'),
            ('weekly', '2019-01-28'),
            ('monthly', '2019-01-02'),
        ]
        assert records[0].location == str(local_root / 'daily' / 'mydb-20190131.tar.gz')
        assert records[0].container == str(local_root / 'daily')

    def test_scan_ignores_other_files(self, local_root, write_backup, name_format, counts):
        write_backup('daily', '2019-01-31')
        (local_root / 'daily' / 'notes.txt').write_text('hello')
        (local_root / 'daily' / 'other-20190131.tar.gz').write_bytes(b'x')
        (local_root / 'daily' / 'mydb-20191345.tar.gz').write_bytes(b'x')

        records = LocalBackups(str(local_root), name_format, counts).scan()

        assert [x.name for x in records] == ['mydb-20190131.tar.gz']

    def test_scan_missing_folder(self, tmp_path, name_format, counts):
        with pytest.raises(OSError):
            LocalBackups(str(tmp_path / 'missing'), name_format, counts).scan()

    def test_ensure_generation_folders(self, tmp_path, name_format, counts):
        root = tmp_path / 'new' / 'backups'
        local = LocalBackups(str(root), name_format, counts)

        local.ensure_generation_folders()
        local.ensure_generation_folders()

        assert names(root) == ['daily', 'monthly', 'weekly']


class TestCapture:
    """Test making the daily backup."""

    def test_capture_prepends_record(self, local_root, write_backup, name_format, counts):
        write_backup('daily', '2019-01-31')
        local = LocalBackups(str(local_root), name_format, counts)
        records = local.scan()
        capture = fake_capture()

        result = local.capture(capture, records)

        capture.assert_called_once_with(str(local_root / 'daily'))
        assert [x.date for x in result] == [ANCHOR, date(2019, 1, 31)]
        assert result[0].generation == 'daily'

    def test_failed_capture_removes_partial_file(self, local_root, name_format, counts):
        partial = local_root / 'daily' / 'mydb-20190201.tar.gz'

        def failing(folder):
            partial.write_bytes(b'half a dump')
            raise CaptureError('mysqldump: Access denied', path=str(partial))

        local = LocalBackups(str(local_root), name_format, counts)

        with pytest.raises(CaptureError, match='Access denied'):
            local.capture(failing, [])

        assert not partial.exists()

    def test_failed_capture_without_file(self, local_root, name_format, counts):
        def failing(folder):
            raise CaptureError('failed', path=str(local_root / 'daily' / 'never-written'))

        with pytest.raises(CaptureError):
            LocalBackups(str(local_root), name_format, counts).capture(failing, [])

    def test_partial_file_removal_is_retried(self, local_root, name_format, counts):
        local = LocalBackups(str(local_root), name_format, counts)

        with patch('gfs_backup.backup.local.os.unlink', side_effect=PermissionError('busy')) as mock_unlink:
            local._remove_partial('/backups/daily/x')

        assert mock_unlink.call_count == 2


class TestPromoteAndExpire:
    """Test promotion and expiration of local files."""

    def test_promote_copies_into_empty_generations(self, local_root, write_backup, name_format, counts):
        write_backup('daily', '2019-02-01', content=b'today')
        local = LocalBackups(str(local_root), name_format, counts)

        records = local.promote(ANCHOR, local.scan())

        assert (local_root / 'weekly' / 'mydb-20190201.tar.gz').read_bytes() == b'today'
        assert (local_root / 'monthly' / 'mydb-20190201.tar.gz').read_bytes() == b'today'
        assert (local_root / 'daily' / 'mydb-20190201.tar.gz').exists()
        assert sorted(x.generation for x in records) == ['daily', 'monthly', 'weekly']

    def test_no_promotion_when_not_due(self, local_root, write_backup, name_format, counts):
        write_backup('daily', '2019-02-01')
        write_backup('weekly', '2019-01-30')
        write_backup('monthly', '2019-01-15')
        local = LocalBackups(str(local_root), name_format, counts)
        records = local.scan()

        assert local.promote(ANCHOR, records) == records
        assert names(local_root / 'weekly') == ['mydb-20190130.tar.gz']

    def test_expire_deletes_oldest(self, local_root, write_backup, name_format):
        for day in ('2019-01-28', '2019-01-29', '2019-01-30', '2019-01-31'):
            write_backup('daily', day)
        local = LocalBackups(str(local_root), name_format, RetentionCounts(daily=2, weekly=4, monthly=6))

        remaining = local.expire(local.scan())

        assert names(local_root / 'daily') == ['mydb-20190130.tar.gz', 'mydb-20190131.tar.gz']
        assert [x.name for x in remaining] == ['mydb-20190131.tar.gz', 'mydb-20190130.tar.gz']

    def test_expire_missing_file(self, local_root, make_record, name_format):
        local = LocalBackups(str(local_root), name_format, RetentionCounts(daily=0, weekly=0, monthly=0))

        with pytest.raises(OSError):
            local.expire([make_record('daily', '2019-01-01')])


class TestRun:
    """Test a full local retention pass."""

    def test_first_run(self, tmp_path, name_format, counts):
        root = tmp_path / 'backups'
        local = LocalBackups(str(root), name_format, counts)

        records = local.run(ANCHOR, fake_capture())

        assert [x.generation for x in records] == ['daily', 'weekly', 'monthly']
        for generation in ('daily', 'weekly', 'monthly'):
            assert names(root / generation) == ['mydb-20190201.tar.gz']

    def test_second_run_same_day_is_idempotent(self, tmp_path, name_format, counts):
        root = tmp_path / 'backups'
        local = LocalBackups(str(root), name_format, counts)
        local.run(ANCHOR, fake_capture())
        capture = fake_capture()

        records = local.run(ANCHOR, capture)

        capture.assert_not_called()
        assert len(records) == 3

    def test_week_of_runs(self, tmp_path, name_format):
        """Test eight consecutive days keep the quota and promote once."""
        root = tmp_path / 'backups'
        local = LocalBackups(str(root), name_format, RetentionCounts(daily=7, weekly=4, monthly=6))

        for day in range(1, 9):
            anchor = date(2019, 1, day)
            local.run(anchor, fake_capture(anchor))

        assert len(names(root / 'daily')) == 7
        assert names(root / 'daily')[0] == 'mydb-20190102.tar.gz'
        assert names(root / 'weekly') == ['mydb-20190101.tar.gz', 'mydb-20190108.tar.gz']
        assert names(root / 'monthly') == ['mydb-20190101.tar.gz']

    def test_capture_failure_aborts_pass(self, local_root, write_backup, name_format):
        for day in ('2019-01-29', '2019-01-30', '2019-01-31'):
            write_backup('daily', day)
        local = LocalBackups(str(local_root), name_format, RetentionCounts(daily=1, weekly=4, monthly=6))
        failing = MagicMock(side_effect=CaptureError('tar: broken'))

        with pytest.raises(CaptureError):
            local.run(ANCHOR, failing)

        assert len(names(local_root / 'daily')) == 3
