from __future__ import annotations

import copy
import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Protocol, TypeVar

from dispatch_engine.errors import ConcurrencyConflictError, NotFoundError
from dispatch_engine.models import Incident, IncidentStatus

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass(frozen=True)
class IncidentFilter:
    status: IncidentStatus | None = None
    emergency_type_code: str | None = None
    priority: int | None = None
    responder_id: str | None = None
    requester_id: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    active_only: bool = True

    def matches(self, incident: Incident) -> bool:
        if self.active_only and not incident.is_active:
            return False
        if self.status is not None and incident.status is not self.status:
            return False
        if self.emergency_type_code and incident.emergency_type_code != self.emergency_type_code.upper():
            return False
        if self.priority is not None and incident.priority != self.priority:
            return False
        if self.requester_id and incident.requester_id != self.requester_id:
            return False
        if self.created_from is not None and incident.created_at < self.created_from:
            return False
        if self.created_to is not None and incident.created_at > self.created_to:
            return False
        if self.responder_id and not any(a.responder_id == self.responder_id for a in incident.assignments):
            return False
        return True


@dataclass(frozen=True)
class IncidentPage:
    incidents: List[Incident]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page * self.limit < self.total

    @property
    def has_prev(self) -> bool:
        return self.page > 1


class IncidentStore(Protocol):
    """Document store with per-incident compare-and-swap."""

    def insert(self, incident: Incident) -> Incident:
        ...

    def get(self, incident_id: str) -> Incident:
        ...

    def compare_and_swap(self, incident: Incident, expected_version: int) -> Incident:
        ...

    def list(self, filters: IncidentFilter, limit: int = 20, offset: int = 0) -> List[Incident]:
        ...

    def count(self, filters: IncidentFilter) -> int:
        ...


def transact(store: IncidentStore, incident_id: str, mutate: Callable[[Incident], R]) -> Incident:
    """Read, mutate a private copy, write back only if nobody else wrote first.

    If ``mutate`` raises, nothing is written. A lost race raises
    ``ConcurrencyConflictError``; the caller must re-read and decide again.
    """
    incident = store.get(incident_id)
    expected = incident.version
    mutate(incident)
    return store.compare_and_swap(incident, expected)


class InMemoryIncidentStore:
    def __init__(self) -> None:
        self._documents: dict[str, Incident] = {}
        self._lock = threading.Lock()

    def insert(self, incident: Incident) -> Incident:
        with self._lock:
            if incident.id in self._documents:
                raise ConcurrencyConflictError(f"incident {incident.id} already exists")
            stored = copy.deepcopy(incident)
            stored.version = 1
            self._documents[incident.id] = stored
            return copy.deepcopy(stored)

    def get(self, incident_id: str) -> Incident:
        with self._lock:
            stored = self._documents.get(incident_id)
            if stored is None:
                raise NotFoundError("incident not found")
            return copy.deepcopy(stored)

    def compare_and_swap(self, incident: Incident, expected_version: int) -> Incident:
        with self._lock:
            current = self._documents.get(incident.id)
            if current is None:
                raise NotFoundError("incident not found")
            if current.version != expected_version:
                logger.info(
                    "stale write rejected incident=%s expected=%s current=%s",
                    incident.id,
                    expected_version,
                    current.version,
                )
                raise ConcurrencyConflictError("incident was modified concurrently; re-read and retry")
            stored = copy.deepcopy(incident)
            stored.version = expected_version + 1
            self._documents[incident.id] = stored
            return copy.deepcopy(stored)

    def list(self, filters: IncidentFilter, limit: int = 20, offset: int = 0) -> List[Incident]:
        with self._lock:
            matching = [copy.deepcopy(i) for i in self._documents.values() if filters.matches(i)]
        matching.sort(key=lambda i: i.created_at, reverse=True)
        return matching[offset : offset + limit]


    def count(self, filters: IncidentFilter) -> int:
        with self._lock:
            return sum(1 for i in self._documents.values() if filters.matches(i))
