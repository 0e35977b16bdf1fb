from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, List, Optional

from dispatch_engine.config import ACCURATE_THRESHOLD_M, MOVING_THRESHOLD_MPS
from dispatch_engine.ring import RingBuffer


class IncidentStatus(str, Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    ARRIVED = "ARRIVED"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({IncidentStatus.RESOLVED, IncidentStatus.CANCELLED, IncidentStatus.REJECTED})

# Forward order of the lifecycle; PENDING and OPEN are both "awaiting assignment".
STATUS_RANK = {
    IncidentStatus.PENDING: 0,
    IncidentStatus.OPEN: 0,
    IncidentStatus.ASSIGNED: 1,
    IncidentStatus.IN_PROGRESS: 2,
    IncidentStatus.ARRIVED: 3,
    IncidentStatus.RESOLVED: 4,
}


class AssignmentStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    ON_ROUTE = "ON_ROUTE"
    ARRIVED = "ARRIVED"
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self is AssignmentStatus.COMPLETED


@dataclass(frozen=True)
class Point:
    longitude: float
    latitude: float


@dataclass(frozen=True)
class ResponderProfile:
    """Identity of a responder frozen into an assignment."""

    full_name: str
    badge_number: str | None = None
    rank: str | None = None
    unit: str | None = None


@dataclass(frozen=True)
class ResponderRecord:
    responder_id: str
    full_name: str
    role: str = "OFFICER"
    badge_number: str | None = None
    rank: str | None = None
    unit: str | None = None
    specializations: frozenset[str] = frozenset()
    available: bool = True
    active: bool = True

    def snapshot(self) -> ResponderProfile:
        return ResponderProfile(
            full_name=self.full_name,
            badge_number=self.badge_number,
            rank=self.rank,
            unit=self.unit,
        )


@dataclass(frozen=True)
class EmergencyType:
    code: str
    name: str
    priority: int = 1
    required_resources: frozenset[str] = frozenset({"police"})
    required_specializations: frozenset[str] = frozenset()
    auto_assign: bool = False
    response_minutes: int | None = None
    active: bool = True

    def requires(self, resource_class: str) -> bool:
        return resource_class.lower() in self.required_resources


@dataclass(frozen=True)
class TimelineEvent:
    action: str
    description: str
    actor_id: str | None
    timestamp: datetime
    location: Point | None = None
    public: bool = True


@dataclass(frozen=True)
class Resolution:
    description: str
    resolved_by: str
    resolved_at: datetime
    actions_taken: List[str] = field(default_factory=list)
    evidence: List[str] = field(default_factory=list)
    follow_up_required: bool = False
    follow_up_date: datetime | None = None


@dataclass(frozen=True)
class Rating:
    score: int
    rated_by: str
    rated_at: datetime
    comment: str | None = None


@dataclass
class Assignment:
    responder_id: str
    responder: ResponderProfile
    assigned_by: str | None
    assigned_at: datetime
    status: AssignmentStatus = AssignmentStatus.PENDING
    accepted_at: datetime | None = None
    on_route_at: datetime | None = None
    arrived_at: datetime | None = None
    completed_at: datetime | None = None
    distance_m: float | None = None
    eta: datetime | None = None

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


@dataclass
class Incident:
    id: str
    requester_id: str
    emergency_type: EmergencyType
    initial_location: Point
    location: Point
    created_at: datetime
    updated_at: datetime
    timeline: RingBuffer[TimelineEvent]
    priority: int = 1
    title: str = ""
    description: str | None = None
    address: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    status: IncidentStatus = IncidentStatus.PENDING
    is_active: bool = True
    assignments: List[Assignment] = field(default_factory=list)
    assigned_by: str | None = None
    resolution: Resolution | None = None
    rating: Rating | None = None
    response_time_minutes: int | None = None
    resolution_time_minutes: int | None = None
    version: int = 0

    @property
    def emergency_type_code(self) -> str:
        return self.emergency_type.code

    def assignment_for(self, responder_id: str) -> Optional[Assignment]:
        """The responder's non-terminal assignment, if any."""
        for assignment in self.assignments:
            if assignment.responder_id == responder_id and assignment.is_active:
                return assignment
        return None

    def active_assignments(self) -> List[Assignment]:
        return [a for a in self.assignments if a.is_active]


@dataclass(frozen=True)
class PositionFix:
    point: Point
    recorded_at: datetime
    accuracy_m: float | None = None
    heading_deg: float | None = None
    speed_mps: float | None = None


@dataclass
class Position:
    subject_id: str
    point: Point
    updated_at: datetime
    history: RingBuffer[PositionFix]
    accuracy_m: float | None = None
    heading_deg: float | None = None
    speed_mps: float | None = None
    distance_traveled_m: float = 0.0
    average_speed_mps: float | None = None
    max_speed_mps: float | None = None

    def is_recent(self, now: datetime, window: timedelta) -> bool:
        return now - self.updated_at <= window

    @property
    def is_accurate(self) -> bool:
        return self.accuracy_m is not None and self.accuracy_m <= ACCURATE_THRESHOLD_M

    @property
    def is_moving(self) -> bool:
        return self.speed_mps is not None and self.speed_mps > MOVING_THRESHOLD_MPS

    def as_fix(self) -> PositionFix:
        return PositionFix(
            point=self.point,
            recorded_at=self.updated_at,
            accuracy_m=self.accuracy_m,
            heading_deg=self.heading_deg,
            speed_mps=self.speed_mps,
        )


@dataclass(frozen=True)
class Candidate:
    responder: ResponderRecord
    distance_m: float


@dataclass(frozen=True)
class NearbyResponder:
    responder: ResponderRecord
    distance_m: float
    position: Position


@dataclass(frozen=True)
class AssignmentResult:
    responder_id: str
    distance_m: float | None
    eta: datetime | None
    candidates_considered: int


@dataclass(frozen=True)
class CreationResult:
    incident: Incident
    auto_assignment: AssignmentResult | None = None
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TrackingEntry:
    responder_id: str
    status: AssignmentStatus
    position: Position | None
    distance_m: float | None
    eta: datetime | None
    is_recent: bool


@dataclass(frozen=True)
class TrackedPosition:
    position: Position
    responder: ResponderRecord | None


@dataclass(frozen=True)
class BulkUpdateError:
    subject_id: str | None
    reason: str


@dataclass(frozen=True)
class BulkUpdateResult:
    results: List[Position] = field(default_factory=list)
    errors: List[BulkUpdateError] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results) + len(self.errors)
