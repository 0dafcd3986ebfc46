"""
Collaborator ports for the enrollment dashboard (scheduling and activity).

Both are optional. The dashboard calls them in worker threads; an absent
provider or a failing call yields a degraded view instead of an error.
The dict-backed adapters serve local development and tests.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol, Sequence


@dataclass(frozen=True)
class ActivitySnapshot:
    progress: float = 0.0
    last_activity: Optional[str] = None
    completed: bool = False


@dataclass(frozen=True)
class UpcomingItem:
    class_id: str
    title: str
    starts_at: str

    def to_public(self) -> dict:
        return {"class_id": self.class_id, "title": self.title, "starts_at": self.starts_at}


class ActivityProvider(Protocol):
    def get_activity(self, student_id: str) -> Mapping[str, ActivitySnapshot]:
        """Activity per class id."""
        ...


class ScheduleProvider(Protocol):
    def get_upcoming(self, student_id: str) -> Sequence[UpcomingItem]:
        ...


class InMemoryActivityProvider:
    def __init__(self, data: Optional[Dict[str, Dict[str, ActivitySnapshot]]] = None) -> None:
        self._data: Dict[str, Dict[str, ActivitySnapshot]] = dict(data or {})

    def put(self, student_id: str, class_id: str, snapshot: ActivitySnapshot) -> None:
        self._data.setdefault(student_id, {})[class_id] = snapshot

    def get_activity(self, student_id: str) -> Mapping[str, ActivitySnapshot]:
        return dict(self._data.get(student_id, {}))


class InMemoryScheduleProvider:
    def __init__(self, data: Optional[Dict[str, List[UpcomingItem]]] = None) -> None:
        self._data: Dict[str, List[UpcomingItem]] = dict(data or {})

    def add(self, student_id: str, item: UpcomingItem) -> None:
        self._data.setdefault(student_id, []).append(item)

    def get_upcoming(self, student_id: str) -> Sequence[UpcomingItem]:
        return sorted(self._data.get(student_id, []), key=lambda i: i.starts_at)


__all__ = [
    "ActivitySnapshot",
    "UpcomingItem",
    "ActivityProvider",
    "ScheduleProvider",
    "InMemoryActivityProvider",
    "InMemoryScheduleProvider",
]
