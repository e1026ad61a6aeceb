from __future__ import annotations

import allure
import pytest

from night_watch.history import HistoryLedger
from night_watch.models import ExecutionOutcome, HistoryRecord

pytestmark = [
    allure.epic("Work Items"),
    allure.feature("Execution History"),
]

PROJECT = "/srv/projects/demo"


def _record(timestamp: int, outcome: ExecutionOutcome = ExecutionOutcome.FAILURE) -> HistoryRecord:
    return HistoryRecord(timestamp=timestamp, outcome=outcome, exit_code=1, attempt=1)


def test_records_are_newest_first_and_trimmed(store) -> None:
    ledger = HistoryLedger(store, max_records=3)

    for timestamp in range(100, 106):
        ledger.append(PROJECT, "item", _record(timestamp))

    assert [record.timestamp for record in ledger.records(PROJECT, "item")] == [105, 104, 103]


def test_same_timestamp_keeps_insertion_order(store) -> None:
    ledger = HistoryLedger(store)
    ledger.append(PROJECT, "item", _record(50, ExecutionOutcome.FAILURE))
    ledger.append(PROJECT, "item", _record(50, ExecutionOutcome.SUCCESS))

    last = ledger.last(PROJECT, "item")

    assert last is not None
    assert last.outcome is ExecutionOutcome.SUCCESS


def test_history_is_keyed_per_project_and_item(store) -> None:
    ledger = HistoryLedger(store)
    ledger.append(PROJECT, "a", _record(1))
    ledger.append(PROJECT, "b", _record(2))
    ledger.append("/srv/projects/other", "a", _record(3))

    assert [record.timestamp for record in ledger.records(PROJECT, "a")] == [1]
    history = ledger.all_history()
    assert set(history) == {PROJECT, "/srv/projects/other"}
    assert set(history[PROJECT]) == {"a", "b"}


def test_explicit_trim_to_smaller_bound(store) -> None:
    ledger = HistoryLedger(store, max_records=10)
    for timestamp in range(5):
        ledger.append(PROJECT, "item", _record(timestamp))

    removed = ledger.trim(PROJECT, "item", 2)

    assert removed == 3
    assert [record.timestamp for record in ledger.records(PROJECT, "item")] == [4, 3]


@pytest.mark.parametrize(
    ("outcome", "age", "expected"),
    [
        (ExecutionOutcome.FAILURE, 10, True),
        (ExecutionOutcome.TIMEOUT, 10, True),
        (ExecutionOutcome.RATE_LIMITED, 10, True),
        (ExecutionOutcome.SUCCESS, 10, False),
        (ExecutionOutcome.FAILURE, 60, False),
    ],
)
def test_cooldown(store, outcome: ExecutionOutcome, age: int, expected: bool) -> None:
    ledger = HistoryLedger(store)
    ledger.append(PROJECT, "item", _record(1_000, outcome))

    assert ledger.is_in_cooldown(PROJECT, "item", 60, now=1_000 + age) is expected


def test_no_history_means_no_cooldown(store) -> None:
    assert HistoryLedger(store).is_in_cooldown(PROJECT, "never-ran", 60) is False


def test_record_execution_stamps_current_time(store) -> None:
    ledger = HistoryLedger(store)

    record = ledger.record_execution(
        PROJECT,
        "item",
        ExecutionOutcome.RATE_LIMITED,
        1,
        attempt=2,
    )

    assert ledger.records(PROJECT, "item") == [record]
    assert record.attempt == 2
    assert ledger.is_in_cooldown(PROJECT, "item", 60)


def test_max_records_must_be_positive(store) -> None:
    with pytest.raises(ValueError, match="max_records"):
        HistoryLedger(store, max_records=0)
