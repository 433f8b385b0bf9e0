from __future__ import annotations

from typing import Any, Dict, List, Protocol

from impactlog.modules.emissions.domain.models import ActivityRecord
from impactlog.shared.core.exceptions import ActivityNotFoundError, InvalidActivityFieldError


class ActivityRecordStore(Protocol):
    """
    Record store contract consumed by the recalculation controller.

    Implementations may be synchronous or return awaitables; the
    controller accepts both.
    """

    def get(self, activity_id: int) -> Any: ...

    def add(self, record: ActivityRecord) -> Any: ...

    def update(self, record: ActivityRecord) -> Any: ...

    def delete(self, activity_id: int) -> Any: ...

    def list(self) -> Any: ...


class InMemoryActivityStore:
    """Dict-backed store keeping insertion order (the activity log order)."""

    def __init__(self, records: List[ActivityRecord] | None = None) -> None:
        self._records: Dict[int, ActivityRecord] = {}
        for record in records or []:
            self.add(record)

    def get(self, activity_id: int) -> ActivityRecord:
        try:
            return self._records[activity_id]
        except KeyError:
            raise ActivityNotFoundError(
                f"Activity {activity_id} not found",
                details={"activity_id": activity_id},
            ) from None

    def add(self, record: ActivityRecord) -> ActivityRecord:
        if record.id in self._records:
            raise InvalidActivityFieldError(
                f"Activity {record.id} already exists",
                details={"activity_id": record.id},
            )
        self._records[record.id] = record
        return record

    def update(self, record: ActivityRecord) -> ActivityRecord:
        if record.id not in self._records:
            raise ActivityNotFoundError(
                f"Activity {record.id} not found", details={"activity_id": record.id}
            )
        self._records[record.id] = record
        return record

    def delete(self, activity_id: int) -> None:
        if self._records.pop(activity_id, None) is None:
            raise ActivityNotFoundError(
                f"Activity {activity_id} not found",
                details={"activity_id": activity_id},
            )

    def list(self) -> List[ActivityRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)
