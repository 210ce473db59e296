"""
Naming codec for backup files and objects.

Backup names are built from a template containing a single [DATE] token,
e.g. "mydb-[DATE].tar.gz" -> "mydb-20190201.tar.gz". This module converts
between templates, concrete names and BackupRecord instances. It does no I/O.
"""

import re
from dataclasses import dataclass, replace
from datetime import date, datetime, time
from typing import Dict, Iterable, List

from gfs_backup.config import ConfigurationError, DATE_TOKEN


DAILY = 'daily'
WEEKLY = 'weekly'
MONTHLY = 'monthly'
GENERATIONS = (DAILY, WEEKLY, MONTHLY)

SEPARATOR = '/'


class MalformedNameError(Exception):
    """Raised when a name does not match the name format it is decoded with."""
    pass


@dataclass(frozen=True)
class BackupRecord:
    """
    A single backup, either a local file or a remote object.

    Attributes:
        name: Base name, without folder or key prefix
        location: Absolute local path, or object key
        container: Generation folder, or generation key prefix
        date: Date embedded in the name
        generation: One of 'daily', 'weekly', 'monthly'
    """

    name: str
    location: str
    container: str
    date: date
    generation: str

    @property
    def year(self) -> int:
        return self.date.year

    @property
    def month(self) -> int:
        return self.date.month

    @property
    def day(self) -> int:
        return self.date.day

    @property
    def stamp(self) -> float:
        """POSIX timestamp of local midnight on the record's date."""
        return datetime.combine(self.date, time.min).timestamp()

    def promoted(self, generation: str, location: str, container: str) -> 'BackupRecord':
        """Return a copy of this record living in another generation."""
        return replace(self, generation=generation, location=location, container=container)


def _check_name_format(name_format: str):
    count = name_format.count(DATE_TOKEN)
    if count != 1:
        raise ConfigurationError(
            f"Name format must contain {DATE_TOKEN} exactly once, found {count}: {name_format}"
        )


def to_regex(name_format: str) -> 're.Pattern':
    """
    Build the pattern matching concrete names of a name format.

    Everything except the [DATE] token is matched literally; the token matches
    exactly eight digits, captured as year, month and day.

    Args:
        name_format: Template containing exactly one [DATE] token

    Returns:
        Compiled, fully anchored pattern

    Raises:
        ConfigurationError: If the template does not contain exactly one token
    """
    _check_name_format(name_format)
    before, after = name_format.split(DATE_TOKEN)
    return re.compile(
        '^' + re.escape(before) + r'([0-9]{4})([0-9]{2})([0-9]{2})' + re.escape(after) + '$'
    )


def to_concrete_name(name_format: str, day: date) -> str:
    """Substitute the [DATE] token with YYYYMMDD."""
    _check_name_format(name_format)
    return name_format.replace(DATE_TOKEN, f"{day.year:04d}{day.month:02d}{day.day:02d}")


def add_extension(name: str, extension: str) -> str:
    return '.'.join([name, extension])


def join_segments(segments: Iterable[str]) -> str:
    """
    Join path or key prefix segments with exactly one separator between them.

    A trailing separator is trimmed from every segment but the last, and a
    leading one from every segment but the first, so callers may pass
    prefixes with or without a trailing "/". Empty segments are skipped.

    Args:
        segments: Segments to join, in order

    Returns:
        Joined string
    """
    parts = [x for x in segments if x]
    last = len(parts) - 1

    trimmed = []
    for i, part in enumerate(parts):
        if i != last:
            part = part.rstrip(SEPARATOR)
        if i != 0:
            part = part.lstrip(SEPARATOR)
        trimmed.append(part)

    return SEPARATOR.join(trimmed)


def generation_folders(root: str) -> Dict[str, str]:
    """Map each generation to its sub-folder of a local backup root."""
    return {generation: join_segments([root, generation]) for generation in GENERATIONS}


def generation_prefixes(prefix: str) -> Dict[str, str]:
    """Map each generation to its key prefix under a user prefix."""
    return {generation: join_segments([prefix, generation]) for generation in GENERATIONS}


def object_key(prefix: str, generation: str, name: str) -> str:
    return join_segments([prefix, generation, name])


def _date_from_match(match, raw_name: str) -> date:
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError as e:
        raise MalformedNameError(f"Invalid date in name {raw_name}: {e}") from e


def decode(generation: str, name_format: str, container: str, raw_name: str) -> BackupRecord:
    """
    Parse a local file name into a BackupRecord.

    Names matching to_regex() can still carry an impossible date, e.g.
    20190230, which is reported as MalformedNameError too.

    Args:
        generation: Generation the file was found in
        name_format: Template the name was produced from
        container: Folder the file lives in
        raw_name: File name, without folder

    Returns:
        BackupRecord for the file

    Raises:
        MalformedNameError: If the name does not match the template
    """
    match = to_regex(name_format).match(raw_name)
    if not match:
        raise MalformedNameError(f"Name {raw_name} does not match format {name_format}")

    folder = container.rstrip(SEPARATOR) or SEPARATOR

    return BackupRecord(
        name=raw_name,
        location=join_segments([folder, raw_name]),
        container=folder,
        date=_date_from_match(match, raw_name),
        generation=generation,
    )


def key_regex(name_format: str, prefix: str, generation: str) -> 're.Pattern':
    """Pattern for full object keys of one generation under a user prefix."""
    return to_regex(object_key(prefix, generation, name_format))


def decode_key(generation: str, name_format: str, prefix: str, key: str) -> BackupRecord:
    """
    Parse an object key into a BackupRecord.

    Args:
        generation: Generation the key was listed under
        name_format: Template the object name was produced from
        prefix: User key prefix (without the generation segment)
        key: Full object key

    Returns:
        BackupRecord whose name is the key without its generation prefix

    Raises:
        MalformedNameError: If the key does not match the prefixed template
    """
    match = key_regex(name_format, prefix, generation).match(key)
    if not match:
        raise MalformedNameError(f"Key {key} does not match format {name_format} under {prefix}")

    generation_prefix = generation_prefixes(prefix)[generation]

    return BackupRecord(
        name=key[len(generation_prefix) + 1:],
        location=key,
        container=generation_prefix,
        date=_date_from_match(match, key),
        generation=generation,
    )


def sort_youngest_first(records: Iterable[BackupRecord]) -> List[BackupRecord]:
    """Sort records by date, youngest first. Equal dates keep their order."""
    return sorted(records, key=lambda x: x.date, reverse=True)
