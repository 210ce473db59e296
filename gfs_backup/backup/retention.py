"""
Retention decisions for generational backups.

Pure functions shared by the local and remote engines: whether a new daily
backup is due, which daily backup to promote into the weekly and monthly
generations, and which backups have aged out of their generation's quota.

Every record sequence taken or returned here is sorted youngest first.
"""

from collections import namedtuple
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from .naming import BackupRecord, DAILY, WEEKLY, MONTHLY, GENERATIONS


WEEKLY_AGE = timedelta(days=7)
MONTHLY_AGE = timedelta(days=30)


Promotions = namedtuple('Promotions', ['weekly', 'monthly'])


class RetentionCounts(namedtuple('RetentionCounts', ['daily', 'weekly', 'monthly'])):
    """Number of backups to keep in each generation."""

    __slots__ = ()

    @classmethod
    def from_dict(cls, num: Dict[str, int]) -> 'RetentionCounts':
        return cls(daily=num['daily'], weekly=num['weekly'], monthly=num['monthly'])

    def for_generation(self, generation: str) -> int:
        return getattr(self, generation)


def today_anchor() -> date:
    """
    Today's date, used as the anchor for every decision in a run.

    Call this once at the start of a run and pass the value along.
    """
    return date.today()


def _youngest(records: Iterable[BackupRecord], generation: str) -> Optional[BackupRecord]:
    for record in records:
        if record.generation == generation:
            return record
    return None


def is_due_today(anchor: date, records: Sequence[BackupRecord]) -> bool:
    """
    Check whether a new daily backup should be made.

    Args:
        anchor: Run anchor date
        records: Existing records, youngest first

    Returns:
        True if there is no daily backup or the youngest one is older than anchor
    """
    youngest_daily = _youngest(records, DAILY)
    return youngest_daily is None or youngest_daily.date < anchor


def get_promotions(anchor: date, counts: RetentionCounts, records: Sequence[BackupRecord]) -> Promotions:
    """
    Choose the daily record to copy into the weekly and monthly generations.

    The youngest daily record is the only candidate, for both generations.
    A generation needs a promotion when it has no record yet or its youngest
    record is at least 7 (weekly) or 30 (monthly) days older than the anchor.
    At most one promotion per generation is returned; missed periods are not
    caught up.

    Args:
        anchor: Run anchor date
        counts: Retention quotas
        records: Existing records, youngest first

    Returns:
        Promotions with the record to promote, or None, for each generation
    """
    youngest_daily = _youngest(records, DAILY)

    if counts.weekly == 0 or counts.monthly == 0 or youngest_daily is None:
        return Promotions(weekly=None, monthly=None)

    youngest_weekly = _youngest(records, WEEKLY)
    youngest_monthly = _youngest(records, MONTHLY)

    need_weekly = youngest_weekly is None or youngest_weekly.date <= anchor - WEEKLY_AGE
    need_monthly = youngest_monthly is None or youngest_monthly.date <= anchor - MONTHLY_AGE

    return Promotions(
        weekly=youngest_daily if need_weekly else None,
        monthly=youngest_daily if need_monthly else None,
    )


def get_expired(counts: RetentionCounts, records: Sequence[BackupRecord]) -> List[BackupRecord]:
    """
    Find the records beyond each generation's quota.

    Walking youngest first, a record expires once the number of records seen
    in its generation (itself included) exceeds that generation's quota.

    Args:
        counts: Retention quotas
        records: Existing records, youngest first

    Returns:
        Expired records, youngest first
    """
    found = {generation: 0 for generation in GENERATIONS}
    expired = []

    for record in records:
        found[record.generation] += 1
        if found[record.generation] > counts.for_generation(record.generation):
            expired.append(record)

    return expired


def without(records: Sequence[BackupRecord], removed: Sequence[BackupRecord]) -> List[BackupRecord]:
    """Records not present in removed, compared by location."""
    removed_locations = {x.location for x in removed}
    return [x for x in records if x.location not in removed_locations]
