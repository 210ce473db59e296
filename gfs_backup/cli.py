"""Command-line entry point"""

import sys
import logging
import argparse

from gfs_backup import configure_logging
from gfs_backup.backup.runner import BackupRunner
from gfs_backup.config import ConfigurationError, get_config, load_config


logger = logging.getLogger(__name__)


def exit_error(msg: str, err: Exception = None) -> int:
    final_message = ' '.join(x for x in ['ERROR:', msg, f"Got error: {err}" if err else None] if x)
    logger.error(final_message, exc_info=err)
    return 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog='gfs-backup',
        description='Make, promote and expire daily, weekly and monthly backups locally and in S3.'
    )
    parser.add_argument('config_file', help='Path to the JSON backup config file')
    parser.add_argument('--env', choices=['development', 'production'], default=None,
                        help='Process environment (default: GFS_BACKUP_ENV or production)')
    args = parser.parse_args(argv)

    try:
        process_config = get_config(args.env)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    configure_logging(process_config)

    try:
        config = load_config(args.config_file)
    except ConfigurationError as e:
        return exit_error('Invalid config file.', e)

    runner = BackupRunner(config)
    try:
        runner.run()
    except Exception as e:
        return exit_error('Backup run failed.', e)

    return 0


if __name__ == '__main__':
    sys.exit(main())
