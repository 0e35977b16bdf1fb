"""Plain-dict encoding of engine entities (JSON ready: ISO timestamps, [lon, lat] points)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from dispatch_engine.models import (
    Assignment,
    AssignmentStatus,
    BulkUpdateResult,
    EmergencyType,
    Incident,
    IncidentStatus,
    NearbyResponder,
    Point,
    Position,
    Rating,
    Resolution,
    ResponderProfile,
    TimelineEvent,
    TrackedPosition,
    TrackingEntry,
)
from dispatch_engine.ring import RingBuffer


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def point_to_list(point: Point | None) -> list[float] | None:
    return [point.longitude, point.latitude] if point else None


def point_from_list(value: list[float] | None) -> Point | None:
    if not value:
        return None
    return Point(longitude=float(value[0]), latitude=float(value[1]))


def emergency_type_to_dict(emergency_type: EmergencyType) -> dict[str, Any]:
    return {
        "code": emergency_type.code,
        "name": emergency_type.name,
        "priority": emergency_type.priority,
        "required_resources": sorted(emergency_type.required_resources),
        "required_specializations": sorted(emergency_type.required_specializations),
        "auto_assign": emergency_type.auto_assign,
        "response_minutes": emergency_type.response_minutes,
    }


def emergency_type_from_dict(data: dict[str, Any]) -> EmergencyType:
    return EmergencyType(
        code=data["code"],
        name=data["name"],
        priority=data.get("priority", 1),
        required_resources=frozenset(data.get("required_resources", [])),
        required_specializations=frozenset(data.get("required_specializations", [])),
        auto_assign=data.get("auto_assign", False),
        response_minutes=data.get("response_minutes"),
    )


def assignment_to_dict(assignment: Assignment) -> dict[str, Any]:
    return {
        "responder_id": assignment.responder_id,
        "responder": {
            "full_name": assignment.responder.full_name,
            "badge_number": assignment.responder.badge_number,
            "rank": assignment.responder.rank,
            "unit": assignment.responder.unit,
        },
        "status": assignment.status.value,
        "assigned_by": assignment.assigned_by,
        "assigned_at": _ts(assignment.assigned_at),
        "accepted_at": _ts(assignment.accepted_at),
        "on_route_at": _ts(assignment.on_route_at),
        "arrived_at": _ts(assignment.arrived_at),
        "completed_at": _ts(assignment.completed_at),
        "distance_m": assignment.distance_m,
        "eta": _ts(assignment.eta),
    }


def assignment_from_dict(data: dict[str, Any]) -> Assignment:
    return Assignment(
        responder_id=data["responder_id"],
        responder=ResponderProfile(**data["responder"]),
        status=AssignmentStatus(data["status"]),
        assigned_by=data.get("assigned_by"),
        assigned_at=_parse_ts(data["assigned_at"]),
        accepted_at=_parse_ts(data.get("accepted_at")),
        on_route_at=_parse_ts(data.get("on_route_at")),
        arrived_at=_parse_ts(data.get("arrived_at")),
        completed_at=_parse_ts(data.get("completed_at")),
        distance_m=data.get("distance_m"),
        eta=_parse_ts(data.get("eta")),
    )


def event_to_dict(event: TimelineEvent) -> dict[str, Any]:
    return {
        "action": event.action,
        "description": event.description,
        "actor_id": event.actor_id,
        "timestamp": _ts(event.timestamp),
        "location": point_to_list(event.location),
        "public": event.public,
    }


def event_from_dict(data: dict[str, Any]) -> TimelineEvent:
    return TimelineEvent(
        action=data["action"],
        description=data["description"],
        actor_id=data.get("actor_id"),
        timestamp=_parse_ts(data["timestamp"]),
        location=point_from_list(data.get("location")),
        public=data.get("public", True),
    )


def incident_to_dict(incident: Incident, include_internal: bool = True) -> dict[str, Any]:
    timeline = [e for e in incident.timeline if include_internal or e.public]
    resolution = incident.resolution
    rating = incident.rating
    return {
        "id": incident.id,
        "requester_id": incident.requester_id,
        "emergency_type_code": incident.emergency_type_code,
        "emergency_type": emergency_type_to_dict(incident.emergency_type),
        "priority": incident.priority,
        "title": incident.title,
        "description": incident.description,
        "address": incident.address,
        "details": incident.details,
        "initial_location": point_to_list(incident.initial_location),
        "location": point_to_list(incident.location),
        "status": incident.status.value,
        "is_active": incident.is_active,
        "assigned_by": incident.assigned_by,
        "assignments": [assignment_to_dict(a) for a in incident.assignments],
        "timeline": [event_to_dict(e) for e in timeline],
        "timeline_capacity": incident.timeline.capacity,
        "resolution": None
        if resolution is None
        else {
            "description": resolution.description,
            "actions_taken": list(resolution.actions_taken),
            "evidence": list(resolution.evidence),
            "follow_up_required": resolution.follow_up_required,
            "follow_up_date": _ts(resolution.follow_up_date),
            "resolved_by": resolution.resolved_by,
            "resolved_at": _ts(resolution.resolved_at),
        },
        "rating": None
        if rating is None
        else {
            "score": rating.score,
            "comment": rating.comment,
            "rated_by": rating.rated_by,
            "rated_at": _ts(rating.rated_at),
        },
        "response_time_minutes": incident.response_time_minutes,
        "resolution_time_minutes": incident.resolution_time_minutes,
        "created_at": _ts(incident.created_at),
        "updated_at": _ts(incident.updated_at),
        "version": incident.version,
    }


def incident_from_dict(data: dict[str, Any]) -> Incident:
    resolution = data.get("resolution")
    rating = data.get("rating")
    return Incident(
        id=data["id"],
        requester_id=data["requester_id"],
        emergency_type=emergency_type_from_dict(data["emergency_type"]),
        initial_location=point_from_list(data["initial_location"]),
        location=point_from_list(data["location"]),
        created_at=_parse_ts(data["created_at"]),
        updated_at=_parse_ts(data["updated_at"]),
        timeline=RingBuffer(
            data.get("timeline_capacity", 100),
            (event_from_dict(e) for e in data.get("timeline", [])),
        ),
        priority=data.get("priority", 1),
        title=data.get("title", ""),
        description=data.get("description"),
        address=data.get("address"),
        details=data.get("details") or {},
        status=IncidentStatus(data["status"]),
        is_active=data.get("is_active", True),
        assignments=[assignment_from_dict(a) for a in data.get("assignments", [])],
        assigned_by=data.get("assigned_by"),
        resolution=None
        if resolution is None
        else Resolution(
            description=resolution["description"],
            resolved_by=resolution["resolved_by"],
            resolved_at=_parse_ts(resolution["resolved_at"]),
            actions_taken=list(resolution.get("actions_taken", [])),
            evidence=list(resolution.get("evidence", [])),
            follow_up_required=resolution.get("follow_up_required", False),
            follow_up_date=_parse_ts(resolution.get("follow_up_date")),
        ),
        rating=None
        if rating is None
        else Rating(
            score=rating["score"],
            rated_by=rating["rated_by"],
            rated_at=_parse_ts(rating["rated_at"]),
            comment=rating.get("comment"),
        ),
        response_time_minutes=data.get("response_time_minutes"),
        resolution_time_minutes=data.get("resolution_time_minutes"),
        version=data.get("version", 0),
    )


def position_to_dict(position: Position, now: datetime | None = None, window=None) -> dict[str, Any]:
    data = {
        "subject_id": position.subject_id,
        "coordinates": point_to_list(position.point),
        "accuracy_m": position.accuracy_m,
        "heading_deg": position.heading_deg,
        "speed_mps": position.speed_mps,
        "updated_at": _ts(position.updated_at),
        "distance_traveled_m": round(position.distance_traveled_m, 1),
        "average_speed_mps": position.average_speed_mps,
        "max_speed_mps": position.max_speed_mps,
        "history_size": len(position.history),
        "is_accurate": position.is_accurate,
        "is_moving": position.is_moving,
    }
    if now is not None and window is not None:
        data["is_recent"] = position.is_recent(now, window)
    return data


def nearby_to_dict(item: NearbyResponder) -> dict[str, Any]:
    responder = item.responder
    return {
        "responder_id": responder.responder_id,
        "distance_m": round(item.distance_m, 1),
        "position": position_to_dict(item.position),
        "responder": {
            "full_name": responder.full_name,
            "badge_number": responder.badge_number,
            "rank": responder.rank,
            "unit": responder.unit,
            "specializations": sorted(responder.specializations),
            "available": responder.available,
        },
    }


def tracking_to_dict(entry: TrackingEntry) -> dict[str, Any]:
    return {
        "responder_id": entry.responder_id,
        "status": entry.status.value,
        "coordinates": point_to_list(entry.position.point) if entry.position else None,
        "distance_m": entry.distance_m,
        "eta": _ts(entry.eta),
        "is_recent": entry.is_recent,
    }


def tracked_to_dict(item: TrackedPosition, now: datetime, window) -> dict[str, Any]:
    responder = item.responder
    data = position_to_dict(item.position, now, window)
    data["responder"] = None
    if responder is not None:
        data["responder"] = {
            "full_name": responder.full_name,
            "role": responder.role,
            "rank": responder.rank,
            "unit": responder.unit,
            "available": responder.available,
        }
    return data


def bulk_result_to_dict(result: BulkUpdateResult) -> dict[str, Any]:
    return {
        "processed": result.processed,
        "successful": len(result.results),
        "failed": len(result.errors),
        "results": [position_to_dict(p) for p in result.results],
        "errors": [{"subject_id": e.subject_id, "error": e.reason} for e in result.errors],
    }
