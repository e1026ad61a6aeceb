"""Retention-bounded execution history per (project, work item)."""

from __future__ import annotations

import logging

from night_watch.models import ExecutionOutcome, HistoryRecord
from night_watch.runtime.keys import project_store_key
from night_watch.storage.common import epoch_now
from night_watch.storage.repositories import ExecutionHistoryRepository
from night_watch.storage.store import StateStore

logger = logging.getLogger(__name__)

MAX_HISTORY_RECORDS_PER_ITEM = 10


class HistoryLedger:
    """Append-only outcome log; each key keeps only its newest records."""

    def __init__(
        self,
        store: StateStore,
        *,
        max_records: int = MAX_HISTORY_RECORDS_PER_ITEM,
    ) -> None:
        if max_records <= 0:
            raise ValueError("max_records must be > 0")
        self.repository = ExecutionHistoryRepository(store)
        self.max_records = max_records

    def append(self, project_path: str, item_name: str, record: HistoryRecord) -> None:
        self.repository.append_and_trim(
            project_store_key(project_path),
            item_name,
            record,
            max_records=self.max_records,
        )

    def record_execution(
        self,
        project_path: str,
        item_name: str,
        outcome: ExecutionOutcome,
        exit_code: int,
        *,
        attempt: int = 1,
    ) -> HistoryRecord:
        record = HistoryRecord(
            timestamp=epoch_now(),
            outcome=outcome,
            exit_code=exit_code,
            attempt=attempt,
        )
        self.append(project_path, item_name, record)
        logger.info("Recorded %s (exit %s) for %s", outcome.value, exit_code, item_name)
        return record

    def records(self, project_path: str, item_name: str) -> list[HistoryRecord]:
        """Newest first; ties on timestamp resolved by insertion order."""

        return self.repository.records(project_store_key(project_path), item_name)

    def trim(self, project_path: str, item_name: str, max_records: int | None = None) -> int:
        return self.repository.trim(
            project_store_key(project_path),
            item_name,
            self.max_records if max_records is None else max_records,
        )

    def last(self, project_path: str, item_name: str) -> HistoryRecord | None:
        records = self.records(project_path, item_name)
        return records[0] if records else None

    def is_in_cooldown(
        self,
        project_path: str,
        item_name: str,
        period_seconds: int,
        *,
        now: int | None = None,
    ) -> bool:
        """A failed, timed-out, or rate-limited last run younger than the period blocks retries."""

        last = self.last(project_path, item_name)
        if last is None or last.outcome is ExecutionOutcome.SUCCESS:
            return False
        current = epoch_now() if now is None else now
        return current - last.timestamp < period_seconds

    def all_history(self) -> dict[str, dict[str, list[HistoryRecord]]]:
        return self.repository.all_history()
