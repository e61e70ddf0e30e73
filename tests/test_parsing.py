from __future__ import annotations

from datetime import UTC, datetime

import pytest

from volume_backup_agent.errors import DateParseError, MissingFieldError
from volume_backup_agent.parsing import EPOCH, parse_collection_status, parse_duplicity_time

_COLLECTION_STATUS_OUTPUT = """\
Local and Remote metadata are synchronized, no sync needed.
Last full backup date: Mon Jan 2 15:04:05 2006
Collection Status
-----------------
Connecting with backend: BackendWrapper
Archive dir: /root/.cache/duplicity/db1

Found 0 secondary backup chains.

Found primary backup chain with matching signature chain:
-------------------------
Chain start time: Mon Jan 2 15:04:05 2006
Chain end time: Tue Jan 3 10:00:00 2006
Number of contained backup sets: 2
Total number of contained volumes: 2
-------------------------
No orphaned or incomplete backup sets found.
"""


def test_parse_collection_status_with_marker_pair_returns_unix_seconds() -> None:
    status = parse_collection_status(_COLLECTION_STATUS_OUTPUT)

    assert status.last_full_backup == datetime(2006, 1, 2, 15, 4, 5, tzinfo=UTC)
    assert status.chain_end_time == datetime(2006, 1, 3, 10, 0, 0, tzinfo=UTC)
    assert status.last_full_backup_timestamp == int(datetime(2006, 1, 2, 15, 4, 5, tzinfo=UTC).timestamp())
    assert status.chain_end_timestamp == int(datetime(2006, 1, 3, 10, 0, 0, tzinfo=UTC).timestamp())


def test_parse_collection_status_with_same_text_twice_returns_same_values() -> None:
    assert parse_collection_status(_COLLECTION_STATUS_OUTPUT) == parse_collection_status(_COLLECTION_STATUS_OUTPUT)


def test_parse_collection_status_with_none_sentinel_returns_epoch_without_parsing(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _fail(*_args, **_kwargs):
        raise AssertionError("date parsing must not run for the none sentinel")

    monkeypatch.setattr("volume_backup_agent.parsing.parse_duplicity_time", _fail)

    status = parse_collection_status("Last full backup date: none\nChain end time: garbage\n")

    assert status.last_full_backup == EPOCH
    assert status.chain_end_time == EPOCH
    assert status.last_full_backup_timestamp == 0
    assert status.chain_end_timestamp == 0


def test_parse_collection_status_with_none_sentinel_and_no_chain_marker_returns_epoch() -> None:
    status = parse_collection_status("Last full backup date: none\r\n")

    assert status.chain_end_timestamp == 0
    assert status.last_full_backup_timestamp == 0


def test_parse_collection_status_with_capitalized_none_is_treated_as_a_date() -> None:
    with pytest.raises(DateParseError):
        parse_collection_status("Last full backup date: None\nChain end time: Tue Jan 3 10:00:00 2006\n")


def test_parse_collection_status_without_full_backup_marker_raises_missing_field() -> None:
    with pytest.raises(MissingFieldError) as error:
        parse_collection_status("Chain end time: Tue Jan 3 10:00:00 2006\n")

    assert error.value.field == "last_full_backup"


def test_parse_collection_status_without_chain_end_marker_raises_missing_field() -> None:
    with pytest.raises(MissingFieldError) as error:
        parse_collection_status("Last full backup date: Mon Jan 2 15:04:05 2006\n")

    assert error.value.field == "chain_end_time"


def test_parse_collection_status_with_invalid_full_date_and_no_chain_marker_raises_missing_field() -> None:
    with pytest.raises(MissingFieldError) as error:
        parse_collection_status("Last full backup date: garbage\n")

    assert error.value.field == "chain_end_time"


def test_parse_collection_status_with_invalid_full_backup_date_raises_date_parse_error() -> None:
    with pytest.raises(DateParseError) as error:
        parse_collection_status("Last full backup date: yesterday\nChain end time: Tue Jan 3 10:00:00 2006\n")

    assert error.value.field == "last_full_backup"


def test_parse_collection_status_with_invalid_chain_end_date_raises_date_parse_error() -> None:
    with pytest.raises(DateParseError) as error:
        parse_collection_status("Last full backup date: Mon Jan 2 15:04:05 2006\nChain end time: soon\n")

    assert error.value.field == "chain_end_time"


def test_parse_collection_status_with_tty_line_endings_strips_carriage_returns() -> None:
    output = _COLLECTION_STATUS_OUTPUT.replace("\n", "\r\n")

    status = parse_collection_status(output)

    assert status.chain_end_time == datetime(2006, 1, 3, 10, 0, 0, tzinfo=UTC)


def test_parse_collection_status_with_repeated_markers_uses_first_match() -> None:
    output = (
        "Last full backup date: Mon Jan 2 15:04:05 2006\n"
        "Chain end time: Tue Jan 3 10:00:00 2006\n"
        "Last full backup date: Sun Jan 1 00:00:00 2006\n"
        "Chain end time: Sun Jan 1 00:00:00 2006\n"
    )

    status = parse_collection_status(output)

    assert status.last_full_backup == datetime(2006, 1, 2, 15, 4, 5, tzinfo=UTC)
    assert status.chain_end_time == datetime(2006, 1, 3, 10, 0, 0, tzinfo=UTC)


def test_parse_duplicity_time_with_space_padded_day_parses() -> None:
    assert parse_duplicity_time("Mon Jan  2 15:04:05 2006", field="x") == datetime(2006, 1, 2, 15, 4, 5, tzinfo=UTC)
