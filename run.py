#!/usr/bin/env python3
"""Backup runner, for invoking from cron"""
import sys
from gfs_backup.cli import main

if __name__ == '__main__':
    sys.exit(main())
