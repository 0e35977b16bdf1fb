"""Incident lifecycle and per-assignment sub-state.

Every operation validates first and mutates second, so a failed call leaves
the incident exactly as it was. Callers pass in a private copy obtained from
an ``IncidentStore`` transaction; nothing here touches storage.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from dispatch_engine.config import DispatchSettings
from dispatch_engine.errors import StateConflictError, ValidationError
from dispatch_engine.geo import estimate_arrival, haversine_m
from dispatch_engine.models import (
    STATUS_RANK,
    Assignment,
    AssignmentStatus,
    EmergencyType,
    Incident,
    IncidentStatus,
    Point,
    Rating,
    Resolution,
    ResponderRecord,
    TimelineEvent,
)
from dispatch_engine.positions import PositionStore
from dispatch_engine.ring import RingBuffer

logger = logging.getLogger(__name__)

# Sub-state each forward step requires, keyed by the target sub-state.
_PREVIOUS_STEP = {
    AssignmentStatus.ACCEPTED: AssignmentStatus.PENDING,
    AssignmentStatus.ON_ROUTE: AssignmentStatus.ACCEPTED,
    AssignmentStatus.ARRIVED: AssignmentStatus.ON_ROUTE,
}

_REJECTABLE = frozenset({AssignmentStatus.PENDING, AssignmentStatus.ACCEPTED, AssignmentStatus.ON_ROUTE})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_minutes(start: datetime, end: datetime) -> int:
    return round((end - start).total_seconds() / 60)


class IncidentStateMachine:
    def __init__(
        self,
        settings: DispatchSettings | None = None,
        positions: PositionStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or DispatchSettings()
        self.positions = positions
        self.clock = clock

    def open_incident(
        self,
        requester_id: str,
        emergency_type: EmergencyType,
        point: Point,
        title: str | None = None,
        description: str | None = None,
        address: str | None = None,
        details: dict[str, Any] | None = None,
        priority: int | None = None,
    ) -> Incident:
        if not requester_id:
            raise ValidationError("requester id is required")
        priority = emergency_type.priority if priority is None else int(priority)
        if not 1 <= priority <= 4:
            raise ValidationError("priority must be between 1 and 4")

        now = self.clock()
        incident = Incident(
            id=uuid4().hex,
            requester_id=requester_id,
            emergency_type=emergency_type,
            initial_location=point,
            location=point,
            created_at=now,
            updated_at=now,
            timeline=RingBuffer(self.settings.timeline_capacity),
            priority=priority,
            title=(title or "").strip() or f"Emergencia {emergency_type.name}",
            description=description.strip() if description else None,
            address=address.strip() if address else None,
            details=dict(details or {}),
        )
        self.record(incident, "INCIDENT_CREATED", "Incident reported by requester", requester_id, location=point)
        return incident

    def record(
        self,
        incident: Incident,
        action: str,
        description: str,
        actor_id: str | None,
        location: Point | None = None,
        public: bool = True,
    ) -> TimelineEvent:
        event = TimelineEvent(
            action=action,
            description=description,
            actor_id=actor_id,
            timestamp=self.clock(),
            location=location,
            public=public,
        )
        incident.timeline.append(event)
        incident.updated_at = event.timestamp
        return event

    @staticmethod
    def _require_open(incident: Incident) -> None:
        if incident.status.is_terminal:
            raise StateConflictError(f"incident is {incident.status.value}")

    @staticmethod
    def _advance(incident: Incident, status: IncidentStatus) -> None:
        if STATUS_RANK[status] > STATUS_RANK[incident.status]:
            incident.status = status

    @staticmethod
    def _assignment(incident: Incident, responder_id: str) -> Assignment:
        assignment = incident.assignment_for(responder_id)
        if assignment is None:
            raise StateConflictError("responder has no active assignment on this incident")
        return assignment

    def refresh_tracking(self, incident: Incident, assignment: Assignment) -> None:
        """Recompute advisory distance/ETA from the responder's current position."""
        if self.positions is None:
            return
        position = self.positions.get(assignment.responder_id)
        if position is None:
            return
        distance = haversine_m(position.point, incident.location)
        assignment.distance_m = round(distance, 1)
        assignment.eta = estimate_arrival(distance, self.clock(), self.settings.assumed_speed_kph)

    def _step(self, incident: Incident, responder_id: str, target: AssignmentStatus) -> Assignment:
        self._require_open(incident)
        assignment = self._assignment(incident, responder_id)
        required = _PREVIOUS_STEP[target]
        if assignment.status is not required:
            raise StateConflictError(
                f"assignment not in required sub-state: expected {required.value}, found {assignment.status.value}"
            )
        assignment.status = target
        return assignment

    def assign(self, incident: Incident, responder: ResponderRecord, acting_id: str) -> Incident:
        self._require_open(incident)
        if incident.assignment_for(responder.responder_id) is not None:
            raise StateConflictError("officer already assigned")
        if not responder.active or not responder.available:
            raise StateConflictError("responder is not available")

        assignment = Assignment(
            responder_id=responder.responder_id,
            responder=responder.snapshot(),
            assigned_by=acting_id,
            assigned_at=self.clock(),
        )
        self.refresh_tracking(incident, assignment)
        incident.assignments.append(assignment)
        incident.assigned_by = acting_id
        self._advance(incident, IncidentStatus.ASSIGNED)
        self.record(
            incident,
            "OFFICER_ASSIGNED",
            f"Responder {responder.full_name} assigned",
            acting_id,
        )
        return incident

    def accept(self, incident: Incident, responder_id: str) -> Incident:
        assignment = self._step(incident, responder_id, AssignmentStatus.ACCEPTED)
        assignment.accepted_at = self.clock()
        self.refresh_tracking(incident, assignment)
        self._advance(incident, IncidentStatus.IN_PROGRESS)
        self.record(incident, "ASSIGNMENT_ACCEPTED", "Responder accepted the assignment", responder_id)
        return incident

    def start_travel(self, incident: Incident, responder_id: str) -> Incident:
        assignment = self._step(incident, responder_id, AssignmentStatus.ON_ROUTE)
        assignment.on_route_at = self.clock()
        self.refresh_tracking(incident, assignment)
        self.record(incident, "OFFICER_EN_ROUTE", "Responder is on the way", responder_id)
        return incident

    def mark_arrived(self, incident: Incident, responder_id: str) -> Incident:
        assignment = self._step(incident, responder_id, AssignmentStatus.ARRIVED)
        now = self.clock()
        assignment.arrived_at = now
        assignment.distance_m = 0.0
        assignment.eta = None
        if incident.response_time_minutes is None:
            incident.response_time_minutes = _elapsed_minutes(incident.created_at, now)
        self._advance(incident, IncidentStatus.ARRIVED)
        self.record(incident, "OFFICER_ARRIVED", "Responder arrived on scene", responder_id, location=incident.location)
        return incident

    def reject_assignment(self, incident: Incident, responder_id: str, reason: str | None = None) -> Incident:
        self._require_open(incident)
        assignment = self._assignment(incident, responder_id)
        if assignment.status not in _REJECTABLE:
            raise StateConflictError(f"assignment cannot be rejected once {assignment.status.value}")

        incident.assignments.remove(assignment)
        if not incident.assignments:
            incident.status = IncidentStatus.OPEN
        description = "Responder rejected the assignment"
        if reason:
            description = f"{description}: {reason.strip()}"
        self.record(incident, "ASSIGNMENT_REJECTED", description, responder_id, public=False)
        return incident

    def resolve(
        self,
        incident: Incident,
        acting_id: str,
        description: str,
        actions_taken: Iterable[str] = (),
        evidence: Iterable[str] = (),
        follow_up_required: bool = False,
        follow_up_date: Optional[datetime] = None,
    ) -> Incident:
        if not description or not description.strip():
            raise ValidationError("resolution description is required")
        self._require_open(incident)

        now = self.clock()
        incident.resolution = Resolution(
            description=description.strip(),
            resolved_by=acting_id,
            resolved_at=now,
            actions_taken=[a.strip() for a in actions_taken if a and a.strip()],
            evidence=list(evidence),
            follow_up_required=follow_up_required,
            follow_up_date=follow_up_date,
        )
        for assignment in incident.active_assignments():
            assignment.status = AssignmentStatus.COMPLETED
            assignment.completed_at = now
        incident.status = IncidentStatus.RESOLVED
        incident.is_active = False
        if incident.resolution_time_minutes is None:
            incident.resolution_time_minutes = _elapsed_minutes(incident.created_at, now)
        self.record(incident, "INCIDENT_RESOLVED", f"Incident resolved: {incident.resolution.description}", acting_id)
        return incident

    def cancel(self, incident: Incident, acting_id: str, reason: str | None = None) -> Incident:
        self._require_open(incident)
        incident.status = IncidentStatus.CANCELLED
        incident.is_active = False
        self.record(incident, "INCIDENT_CANCELLED", reason or "Incident cancelled", acting_id)
        return incident

    def reject(self, incident: Incident, acting_id: str, reason: str | None = None) -> Incident:
        self._require_open(incident)
        incident.status = IncidentStatus.REJECTED
        incident.is_active = False
        self.record(incident, "INCIDENT_REJECTED", reason or "Report rejected", acting_id, public=False)
        return incident

    def reopen(self, incident: Incident, acting_id: str, reason: str | None = None) -> Incident:
        if incident.status not in (IncidentStatus.CANCELLED, IncidentStatus.REJECTED):
            raise StateConflictError(f"cannot reopen an incident that is {incident.status.value}")
        incident.status = IncidentStatus.OPEN
        incident.is_active = True
        self.record(incident, "INCIDENT_REOPENED", reason or "Incident reopened", acting_id)
        return incident

    def mark_open(self, incident: Incident, acting_id: str | None, reason: str) -> Incident:
        """Hand an unassigned incident over to manual dispatch."""
        if incident.status.is_terminal:
            return incident
        if incident.status is IncidentStatus.PENDING:
            incident.status = IncidentStatus.OPEN
        self.record(incident, "AUTO_ASSIGN_FAILED", reason, acting_id, public=False)
        return incident

    def update_requester_location(self, incident: Incident, point: Point, acting_id: str | None = None) -> Incident:
        self._require_open(incident)
        incident.location = point
        for assignment in incident.active_assignments():
            if assignment.status is not AssignmentStatus.ARRIVED:
                self.refresh_tracking(incident, assignment)
        self.record(
            incident,
            "REQUESTER_LOCATION_UPDATED",
            "Requester location updated",
            acting_id or incident.requester_id,
            location=point,
            public=False,
        )
        return incident

    def rate(self, incident: Incident, acting_id: str, score: int, comment: str | None = None) -> Incident:
        if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 5:
            raise ValidationError("rating must be an integer between 1 and 5")
        if incident.status is not IncidentStatus.RESOLVED:
            raise StateConflictError("only resolved incidents can be rated")
        incident.rating = Rating(
            score=score,
            rated_by=acting_id,
            rated_at=self.clock(),
            comment=comment.strip() if comment else None,
        )
        self.record(incident, "INCIDENT_RATED", f"Requester rated the response {score}/5", acting_id, public=False)
        return incident
