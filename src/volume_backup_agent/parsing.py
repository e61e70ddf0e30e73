"""Parsers for the text output of backup tools."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import re

from .errors import DateParseError, MissingFieldError

DUPLICITY_TIME_FORMAT = "%a %b %d %H:%M:%S %Y"
NO_BACKUP_SENTINEL = "none"
EPOCH = datetime.fromtimestamp(0, tz=UTC)

FULL_BACKUP_RX = re.compile(r"Last full backup date: (.+)")
CHAIN_END_TIME_RX = re.compile(r"Chain end time: (.+)")


@dataclass(frozen=True)
class CollectionStatus:
    last_full_backup: datetime
    chain_end_time: datetime

    @property
    def last_full_backup_timestamp(self) -> int:
        return int(self.last_full_backup.timestamp())

    @property
    def chain_end_timestamp(self) -> int:
        return int(self.chain_end_time.timestamp())


def parse_collection_status(output: str) -> CollectionStatus:
    """Extract the last full backup date and chain end time from
    ``duplicity collection-status`` output.

    A full backup value of ``none`` means the target holds no backup yet and
    both dates resolve to the Unix epoch.
    """
    full_backup = _first_match(FULL_BACKUP_RX, output)
    if full_backup is None:
        raise MissingFieldError("last full backup date not found in output", field="last_full_backup")
    if full_backup == NO_BACKUP_SENTINEL:
        return CollectionStatus(last_full_backup=EPOCH, chain_end_time=EPOCH)

    chain_end = _first_match(CHAIN_END_TIME_RX, output)
    if chain_end is None:
        raise MissingFieldError("chain end time not found in output", field="chain_end_time")

    last_full_backup = parse_duplicity_time(full_backup, field="last_full_backup")
    chain_end_time = parse_duplicity_time(chain_end, field="chain_end_time")

    return CollectionStatus(last_full_backup=last_full_backup, chain_end_time=chain_end_time)


def parse_duplicity_time(value: str, *, field: str) -> datetime:
    try:
        parsed = datetime.strptime(value.strip(), DUPLICITY_TIME_FORMAT)
    except ValueError as error:
        raise DateParseError(f"failed to parse {field} date {value.strip()!r}: {error}", field=field) from error
    return parsed.replace(tzinfo=UTC)


def _first_match(pattern: re.Pattern[str], output: str) -> str | None:
    match = pattern.search(output)
    if match is None:
        return None
    return match.group(1).strip()
