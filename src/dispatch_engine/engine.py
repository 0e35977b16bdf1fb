from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Optional, Tuple

from dispatch_engine.catalog import EmergencyTypeCatalog
from dispatch_engine.config import DispatchSettings
from dispatch_engine.directory import ResponderDirectory
from dispatch_engine.errors import (
    ConcurrencyConflictError,
    DispatchError,
    NoCandidateError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from dispatch_engine.geo import estimate_arrival, haversine_m, validate_point
from dispatch_engine.matching import MatchingAlgorithm
from dispatch_engine.models import (
    AssignmentResult,
    AssignmentStatus,
    BulkUpdateError,
    BulkUpdateResult,
    CreationResult,
    Incident,
    NearbyResponder,
    Position,
    TrackedPosition,
    TrackingEntry,
)
from dispatch_engine.permissions import (
    Actor,
    Permission,
    Role,
    require,
    require_requester_or,
    require_resolver,
    require_responder_self,
)
from dispatch_engine.positions import PositionStore
from dispatch_engine.state_machine import IncidentStateMachine
from dispatch_engine.store import IncidentFilter, IncidentPage, IncidentStore, transact

logger = logging.getLogger(__name__)

AUTO_DISPATCH_ACTOR = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchEngine:
    """Entry point for every externally triggered dispatch operation.

    Holds no incident state of its own: each call reads the current document,
    checks who is asking, runs one state-machine transition on a private copy
    and writes it back with a version check.
    """

    def __init__(
        self,
        store: IncidentStore,
        directory: ResponderDirectory,
        positions: PositionStore | None = None,
        catalog: EmergencyTypeCatalog | None = None,
        settings: DispatchSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or DispatchSettings()
        self.store = store
        self.directory = directory
        self.clock = clock
        self.positions = positions if positions is not None else PositionStore(directory, self.settings, clock=clock)
        self.catalog = catalog or EmergencyTypeCatalog()
        self.matching = MatchingAlgorithm(self.positions)
        self.machine = IncidentStateMachine(self.settings, self.positions, clock=clock)

    @staticmethod
    def _require_view(actor: Actor, incident: Incident) -> None:
        require(actor, Permission.VIEW_INCIDENTS)
        if actor.role is Role.CIVIL and incident.requester_id != actor.id:
            raise PermissionDeniedError("civilians can only view their own incidents")

    def get_incident(self, actor: Actor, incident_id: str) -> Incident:
        incident = self.store.get(incident_id)
        self._require_view(actor, incident)
        return incident

    def list_incidents(
        self,
        actor: Actor,
        filters: IncidentFilter | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Incident]:
        require(actor, Permission.VIEW_INCIDENTS)
        filters = filters or IncidentFilter()
        if actor.role is Role.CIVIL:
            filters = replace(filters, requester_id=actor.id)
        return self.store.list(filters, limit=limit, offset=offset)

    def page_incidents(self, actor: Actor, filters: IncidentFilter | None = None, page: int = 1, limit: int = 20) -> IncidentPage:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        require(actor, Permission.VIEW_INCIDENTS)
        filters = filters or IncidentFilter()
        if actor.role is Role.CIVIL:
            filters = replace(filters, requester_id=actor.id)
        incidents = self.store.list(filters, limit=limit, offset=(page - 1) * limit)
        return IncidentPage(incidents=incidents, total=self.store.count(filters), page=page, limit=limit)

    def create_incident(
        self,
        actor: Actor,
        emergency_type_code: str,
        longitude: float,
        latitude: float,
        title: str | None = None,
        description: str | None = None,
        address: str | None = None,
        details: dict[str, Any] | None = None,
        priority: int | None = None,
    ) -> CreationResult:
        point = validate_point(longitude, latitude)
        emergency_type = self.catalog.require(emergency_type_code)
        require(actor, Permission.REPORT_INCIDENTS)

        incident = self.machine.open_incident(
            requester_id=actor.id,
            emergency_type=emergency_type,
            point=point,
            title=title,
            description=description,
            address=address,
            details=details,
            priority=priority,
        )
        incident = self.store.insert(incident)
        logger.info("incident created id=%s type=%s requester=%s", incident.id, emergency_type.code, actor.id)

        if not (emergency_type.auto_assign and emergency_type.requires(self.settings.resource_class)):
            return CreationResult(incident=incident)

        try:
            incident, result = self._dispatch_nearest(incident.id, acting_id=AUTO_DISPATCH_ACTOR)
        except DispatchError as exc:
            logger.warning("auto-assignment failed incident=%s reason=%s", incident.id, exc.reason)
            incident = self._hand_to_manual(incident.id, exc.reason)
            return CreationResult(incident=incident, warnings=[exc.reason])
        return CreationResult(incident=incident, auto_assignment=result)

    def _hand_to_manual(self, incident_id: str, reason: str) -> Incident:
        try:
            return transact(self.store, incident_id, lambda i: self.machine.mark_open(i, None, reason))
        except ConcurrencyConflictError:
            # Someone already acted on the incident; their state stands.
            return self.store.get(incident_id)

    def _commit_assignment(self, incident_id: str, responder_id: str, acting_id: str | None) -> Incident:
        def mutate(incident: Incident) -> None:
            # Availability is re-read here, at commit time, not at selection time.
            responder = self.directory.get(responder_id)
            if responder is None or responder.role not in self.settings.responder_roles:
                raise NotFoundError("active responder not found")
            self.machine.assign(incident, responder, acting_id)

        incident = transact(self.store, incident_id, mutate)
        logger.info("responder assigned incident=%s responder=%s by=%s", incident_id, responder_id, acting_id)
        return incident

    def _dispatch_nearest(self, incident_id: str, acting_id: str | None) -> Tuple[Incident, AssignmentResult]:
        incident = self.store.get(incident_id)
        taken = {a.responder_id for a in incident.active_assignments()}
        candidates = [
            c
            for c in self.matching.find_candidates(
                incident.location,
                self.settings.search_radius_m,
                self.settings.top_n + len(taken),
                incident.emergency_type.required_specializations,
            )
            if c.responder.responder_id not in taken
        ][: self.settings.top_n]
        best = self.matching.select_best(candidates)

        try:
            incident = self._commit_assignment(incident_id, best.responder.responder_id, acting_id)
        except ConcurrencyConflictError:
            raise
        except StateConflictError as exc:
            raise NoCandidateError(f"selected responder could not be assigned: {exc.reason}") from exc

        assignment = incident.assignment_for(best.responder.responder_id)
        result = AssignmentResult(
            responder_id=best.responder.responder_id,
            distance_m=round(best.distance_m, 1),
            eta=assignment.eta if assignment else None,
            candidates_considered=len(candidates),
        )
        return incident, result

    def assign_responder(self, actor: Actor, incident_id: str, responder_id: str) -> Incident:
        if not responder_id:
            raise ValidationError("responder id is required")
        require(actor, Permission.ASSIGN_OFFICERS)
        return self._commit_assignment(incident_id, responder_id, actor.id)

    def auto_assign(self, actor: Actor, incident_id: str) -> Tuple[Incident, AssignmentResult]:
        require(actor, Permission.ASSIGN_OFFICERS)
        incident = self.store.get(incident_id)
        if incident.status.is_terminal:
            raise StateConflictError(f"incident is {incident.status.value}")
        if not incident.emergency_type.requires(self.settings.resource_class):
            raise StateConflictError(
                f"emergency type {incident.emergency_type_code} does not require {self.settings.resource_class}"
            )
        return self._dispatch_nearest(incident_id, actor.id)

    def accept_assignment(self, actor: Actor, incident_id: str, responder_id: str | None = None) -> Incident:
        responder_id = responder_id or actor.id
        require_responder_self(actor, responder_id)
        return transact(self.store, incident_id, lambda i: self.machine.accept(i, responder_id))

    def start_travel(self, actor: Actor, incident_id: str, responder_id: str | None = None) -> Incident:
        responder_id = responder_id or actor.id
        require_responder_self(actor, responder_id)
        return transact(self.store, incident_id, lambda i: self.machine.start_travel(i, responder_id))

    def mark_arrived(self, actor: Actor, incident_id: str, responder_id: str | None = None) -> Incident:
        responder_id = responder_id or actor.id
        require_responder_self(actor, responder_id)
        return transact(self.store, incident_id, lambda i: self.machine.mark_arrived(i, responder_id))

    def reject_assignment(self, actor: Actor, incident_id: str, responder_id: str | None = None, reason: str | None = None) -> Incident:
        """Detach a responder. Responders reject their own; dispatchers may unassign anyone."""
        responder_id = responder_id or actor.id
        if responder_id != actor.id or actor.role is not Role.OFFICER:
            require(actor, Permission.ASSIGN_OFFICERS)
        incident = transact(self.store, incident_id, lambda i: self.machine.reject_assignment(i, responder_id, reason))
        logger.info("assignment rejected incident=%s responder=%s", incident_id, responder_id)
        return incident

    def resolve(
        self,
        actor: Actor,
        incident_id: str,
        description: str,
        actions_taken: Iterable[str] = (),
        evidence: Iterable[str] = (),
        follow_up_required: bool = False,
        follow_up_date: Optional[datetime] = None,
    ) -> Incident:
        if not description or not description.strip():
            raise ValidationError("resolution description is required")

        def mutate(incident: Incident) -> None:
            require_resolver(actor, incident)
            self.machine.resolve(
                incident,
                actor.id,
                description,
                actions_taken=list(actions_taken),
                evidence=list(evidence),
                follow_up_required=follow_up_required,
                follow_up_date=follow_up_date,
            )

        incident = transact(self.store, incident_id, mutate)
        logger.info("incident resolved id=%s by=%s", incident_id, actor.id)
        return incident

    def cancel(self, actor: Actor, incident_id: str, reason: str | None = None) -> Incident:
        def mutate(incident: Incident) -> None:
            require_requester_or(actor, incident, Permission.MANAGE_INCIDENTS)
            self.machine.cancel(incident, actor.id, reason)

        return transact(self.store, incident_id, mutate)

    def reject_incident(self, actor: Actor, incident_id: str, reason: str | None = None) -> Incident:
        require(actor, Permission.MANAGE_INCIDENTS)
        return transact(self.store, incident_id, lambda i: self.machine.reject(i, actor.id, reason))

    def reopen(self, actor: Actor, incident_id: str, reason: str | None = None) -> Incident:
        require(actor, Permission.MANAGE_INCIDENTS)
        return transact(self.store, incident_id, lambda i: self.machine.reopen(i, actor.id, reason))

    def update_requester_location(self, actor: Actor, incident_id: str, longitude: float, latitude: float) -> Incident:
        point = validate_point(longitude, latitude)

        def mutate(incident: Incident) -> None:
            require_requester_or(actor, incident, Permission.MANAGE_INCIDENTS)
            self.machine.update_requester_location(incident, point, actor.id)

        return transact(self.store, incident_id, mutate)

    def rate_incident(self, actor: Actor, incident_id: str, score: int, comment: str | None = None) -> Incident:
        def mutate(incident: Incident) -> None:
            if incident.requester_id != actor.id:
                raise PermissionDeniedError("only the requester can rate this incident")
            self.machine.rate(incident, actor.id, score, comment)

        return transact(self.store, incident_id, mutate)

    def update_position(
        self,
        actor: Actor,
        subject_id: str,
        longitude: float,
        latitude: float,
        accuracy_m: float | None = None,
        heading_deg: float | None = None,
        speed_mps: float | None = None,
    ) -> Position:
        point = validate_point(longitude, latitude)
        if not (actor.id == subject_id and actor.can(Permission.TRACK_LOCATION)):
            require(actor, Permission.MANAGE_SYSTEM)
        return self.positions.update(subject_id, point, accuracy_m, heading_deg, speed_mps)

    def get_position(self, actor: Actor, subject_id: str) -> Position:
        if actor.id != subject_id:
            require(actor, Permission.ACCESS_MAP)
        position = self.positions.get(subject_id)
        if position is None:
            raise NotFoundError("no position recorded for this subject")
        return position

    def _search_radius(self, radius_m: float | None) -> float:
        if radius_m is None:
            return self.settings.search_radius_m
        if radius_m < 0:
            raise ValidationError("radius must not be negative")
        return radius_m

    @staticmethod
    def _max_age(max_age_minutes: float | None) -> timedelta | None:
        if max_age_minutes is None:
            return None
        if max_age_minutes < 0:
            raise ValidationError("max age must not be negative")
        return timedelta(minutes=max_age_minutes)

    @staticmethod
    def _check_limit(limit: int) -> None:
        if limit < 0:
            raise ValidationError("limit must not be negative")

    def find_nearby(
        self,
        actor: Actor,
        longitude: float,
        latitude: float,
        radius_m: float | None = None,
        limit: int = 20,
        max_age_minutes: float | None = None,
        specialization: str | None = None,
        rank: str | None = None,
        unit: str | None = None,
    ) -> List[NearbyResponder]:
        origin = validate_point(longitude, latitude)
        radius = self._search_radius(radius_m)
        max_age = self._max_age(max_age_minutes)
        self._check_limit(limit)
        require(actor, Permission.ACCESS_MAP)
        return self.positions.find_nearby(
            origin,
            radius,
            limit=limit,
            max_age=max_age,
            specialization=specialization,
            rank=rank,
            unit=unit,
        )

    def nearby_for_incident(self, actor: Actor, incident_id: str, radius_m: float | None = None, limit: int = 10) -> List[NearbyResponder]:
        radius = self._search_radius(radius_m)
        self._check_limit(limit)
        require(actor, Permission.ASSIGN_OFFICERS)
        incident = self.store.get(incident_id)
        return self.positions.find_nearby(incident.location, radius, limit=limit)

    def list_positions(
        self,
        actor: Actor,
        role: str | None = None,
        max_age_minutes: float | None = None,
        available_only: bool = False,
        limit: int = 100,
    ) -> List[TrackedPosition]:
        max_age = self._max_age(max_age_minutes)
        self._check_limit(limit)
        require(actor, Permission.ASSIGN_OFFICERS)
        return self.positions.list(role=role, max_age=max_age, available_only=available_only, limit=limit)

    def bulk_update_positions(self, actor: Actor, updates: Iterable[dict[str, Any]]) -> BulkUpdateResult:
        """Apply position updates one by one; a bad entry is reported, not fatal."""
        updates = list(updates)
        if not updates:
            raise ValidationError("at least one position update is required")
        require(actor, Permission.ASSIGN_OFFICERS)

        result = BulkUpdateResult()
        for entry in updates:
            subject_id = entry.get("subject_id")
            longitude, latitude = entry.get("longitude"), entry.get("latitude")
            if not subject_id or longitude is None or latitude is None:
                result.errors.append(BulkUpdateError(subject_id, "incomplete entry"))
                continue
            if self.directory.get(subject_id) is None:
                result.errors.append(BulkUpdateError(subject_id, "responder not found"))
                continue
            try:
                point = validate_point(longitude, latitude)
            except ValidationError as exc:
                result.errors.append(BulkUpdateError(subject_id, exc.reason))
                continue
            result.results.append(
                self.positions.update(
                    subject_id,
                    point,
                    entry.get("accuracy_m"),
                    entry.get("heading_deg"),
                    entry.get("speed_mps"),
                )
            )

        logger.info("bulk position update by=%s ok=%d failed=%d", actor.id, len(result.results), len(result.errors))
        return result

    def remove_position(self, actor: Actor, subject_id: str) -> Position:
        require(actor, Permission.MANAGE_SYSTEM)
        position = self.positions.remove(subject_id)
        if position is None:
            raise NotFoundError("no position recorded for this subject")
        return position

    def tracking(self, actor: Actor, incident_id: str) -> List[TrackingEntry]:
        """Live distance/ETA per active assignment, computed from current positions."""
        incident = self.get_incident(actor, incident_id)
        now = self.clock()
        window = timedelta(minutes=self.settings.staleness_minutes)

        entries = []
        for assignment in incident.active_assignments():
            position = self.positions.get(assignment.responder_id)
            distance = eta = None
            if assignment.status is AssignmentStatus.ARRIVED:
                distance = 0.0
            elif position is not None:
                distance = round(haversine_m(position.point, incident.location), 1)
                eta = estimate_arrival(distance, now, self.settings.assumed_speed_kph)
            entries.append(
                TrackingEntry(
                    responder_id=assignment.responder_id,
                    status=assignment.status,
                    position=position,
                    distance_m=distance,
                    eta=eta,
                    is_recent=bool(position and position.is_recent(now, window)),
                )
            )
        return entries
