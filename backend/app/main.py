from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dispatch_engine.codec import (
    bulk_result_to_dict,
    emergency_type_to_dict,
    incident_to_dict,
    nearby_to_dict,
    position_to_dict,
    tracked_to_dict,
    tracking_to_dict,
)
from dispatch_engine.engine import DispatchEngine
from dispatch_engine.errors import (
    ConcurrencyConflictError,
    DispatchError,
    NoCandidateError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from dispatch_engine.models import Incident, IncidentStatus, ResponderRecord
from dispatch_engine.permissions import Actor, Permission, Role, require
from dispatch_engine.positions import PositionStore
from dispatch_engine.store import IncidentFilter

from .auth import get_current_actor
from .config import AUDIT_LOG_LIMIT, DB_PATH, DISPATCH, LOG_LEVEL, RECENT_POSITION_MINUTES
from .db import SqliteIncidentStore, SqliteResponderDirectory, get_conn, init_db, now_iso

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Incident Dispatch Engine")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

directory = SqliteResponderDirectory(DB_PATH)
positions = PositionStore(directory, DISPATCH)
engine = DispatchEngine(
    store=SqliteIncidentStore(DB_PATH),
    directory=directory,
    positions=positions,
    settings=DISPATCH,
)

# Checked in order; subclasses before their bases.
ERROR_STATUS = [
    (NotFoundError, 404),
    (ConcurrencyConflictError, 409),
    (PermissionDeniedError, 403),
    (ValidationError, 400),
    (NoCandidateError, 422),
    (StateConflictError, 409),
]

SEED_RESPONDERS = [
    ResponderRecord(
        responder_id="officer-1",
        full_name="Ana Quispe",
        badge_number="ABC1234",
        rank="SARGENTO",
        unit="Patrulla Norte",
        specializations=frozenset({"PATRULLAJE", "SEGURIDAD_CIUDADANA"}),
    ),
    ResponderRecord(
        responder_id="officer-2",
        full_name="Luis Mamani",
        badge_number="XYZ5678",
        rank="TENIENTE",
        unit="Transito Centro",
        specializations=frozenset({"TRANSITO"}),
    ),
]


@app.on_event("startup")
def startup() -> None:
    init_db()
    seed_responders()


def seed_responders() -> None:
    for responder in SEED_RESPONDERS:
        if directory.get(responder.responder_id) is None:
            directory.upsert(responder)


@app.exception_handler(DispatchError)
def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    code = next((status for kind, status in ERROR_STATUS if isinstance(exc, kind)), 400)
    return JSONResponse(status_code=code, content={"error": exc.reason})


def write_audit(actor: Actor, action: str, request: Request, details: str = "") -> None:
    ip = request.client.host if request.client else "unknown"
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO audit_logs (actor_id,action,ip_address,details,created_at) VALUES (?,?,?,?,?)",
            (actor.id, action, ip, details, now_iso()),
        )


def as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def incident_payload(incident: Incident, actor: Actor) -> dict:
    return incident_to_dict(incident, include_internal=actor.role is not Role.CIVIL)


@app.get("/emergency-types")
def emergency_types():
    return [emergency_type_to_dict(t) for t in engine.catalog.active()]


@app.post("/incidents", status_code=201)
def create_incident(
    request: Request,
    emergency_type_code: str = Form(...),
    longitude: float = Form(...),
    latitude: float = Form(...),
    title: str = Form(""),
    description: str = Form(""),
    address: str = Form(""),
    priority: int | None = Form(None),
    actor: Actor = Depends(get_current_actor),
):
    result = engine.create_incident(
        actor,
        emergency_type_code,
        longitude=longitude,
        latitude=latitude,
        title=title or None,
        description=description or None,
        address=address or None,
        priority=priority,
    )
    write_audit(actor, "create_incident", request, f"incident_id={result.incident.id}")
    auto = result.auto_assignment
    return {
        "incident": incident_payload(result.incident, actor),
        "auto_assignment": None
        if auto is None
        else {
            "responder_id": auto.responder_id,
            "distance_m": auto.distance_m,
            "eta": auto.eta.isoformat() if auto.eta else None,
            "candidates_considered": auto.candidates_considered,
        },
        "warnings": result.warnings,
    }


@app.get("/incidents")
def list_incidents(
    status: str | None = None,
    emergency_type_code: str | None = None,
    priority: int | None = None,
    responder_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    include_closed: bool = False,
    limit: int = 20,
    page: int = 1,
    actor: Actor = Depends(get_current_actor),
):
    try:
        status_filter = IncidentStatus(status.upper()) if status else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown status {status}") from exc

    filters = IncidentFilter(
        status=status_filter,
        emergency_type_code=emergency_type_code,
        priority=priority,
        responder_id=responder_id,
        created_from=as_utc(date_from),
        created_to=as_utc(date_to),
        active_only=not include_closed,
    )
    result = engine.page_incidents(actor, filters, page=max(page, 1), limit=max(1, min(limit, 100)))
    return {
        "incidents": [incident_payload(i, actor) for i in result.incidents],
        "count": len(result.incidents),
        "pagination": {
            "current_page": result.page,
            "total_pages": result.total_pages,
            "total": result.total,
            "has_next": result.has_next,
            "has_prev": result.has_prev,
        },
    }


@app.get("/incidents/{incident_id}")
def get_incident(incident_id: str, actor: Actor = Depends(get_current_actor)):
    return incident_payload(engine.get_incident(actor, incident_id), actor)


@app.post("/incidents/{incident_id}/assign")
def assign_responder(
    incident_id: str,
    request: Request,
    responder_id: str = Form(...),
    actor: Actor = Depends(get_current_actor),
):
    incident = engine.assign_responder(actor, incident_id, responder_id)
    write_audit(actor, "assign_responder", request, f"incident_id={incident_id};responder_id={responder_id}")
    return incident_payload(incident, actor)


@app.post("/incidents/{incident_id}/auto-assign")
def auto_assign(incident_id: str, request: Request, actor: Actor = Depends(get_current_actor)):
    incident, result = engine.auto_assign(actor, incident_id)
    write_audit(actor, "auto_assign", request, f"incident_id={incident_id};responder_id={result.responder_id}")
    return {
        "incident": incident_payload(incident, actor),
        "assignment": {
            "responder_id": result.responder_id,
            "distance_m": result.distance_m,
            "eta": result.eta.isoformat() if result.eta else None,
            "candidates_considered": result.candidates_considered,
        },
    }


@app.post("/incidents/{incident_id}/accept")
def accept_assignment(incident_id: str, actor: Actor = Depends(get_current_actor)):
    return incident_payload(engine.accept_assignment(actor, incident_id), actor)


@app.post("/incidents/{incident_id}/start-travel")
def start_travel(incident_id: str, actor: Actor = Depends(get_current_actor)):
    return incident_payload(engine.start_travel(actor, incident_id), actor)


@app.post("/incidents/{incident_id}/mark-arrived")
def mark_arrived(incident_id: str, actor: Actor = Depends(get_current_actor)):
    return incident_payload(engine.mark_arrived(actor, incident_id), actor)


@app.post("/incidents/{incident_id}/reject-assignment")
def reject_assignment(
    incident_id: str,
    request: Request,
    responder_id: str = Form(""),
    reason: str = Form(""),
    actor: Actor = Depends(get_current_actor),
):
    incident = engine.reject_assignment(actor, incident_id, responder_id or None, reason or None)
    write_audit(actor, "reject_assignment", request, f"incident_id={incident_id};responder_id={responder_id or actor.id}")
    return incident_payload(incident, actor)


@app.post("/incidents/{incident_id}/resolve")
def resolve_incident(
    incident_id: str,
    request: Request,
    description: str = Form(...),
    actions_taken: list[str] = Form(default=[]),
    evidence: list[str] = Form(default=[]),
    follow_up_required: bool = Form(False),
    follow_up_date: datetime | None = Form(None),
    actor: Actor = Depends(get_current_actor),
):
    incident = engine.resolve(
        actor,
        incident_id,
        description,
        actions_taken=actions_taken,
        evidence=evidence,
        follow_up_required=follow_up_required,
        follow_up_date=follow_up_date,
    )
    write_audit(actor, "resolve_incident", request, f"incident_id={incident_id}")
    return incident_payload(incident, actor)


@app.post("/incidents/{incident_id}/cancel")
def cancel_incident(incident_id: str, request: Request, reason: str = Form(""), actor: Actor = Depends(get_current_actor)):
    incident = engine.cancel(actor, incident_id, reason or None)
    write_audit(actor, "cancel_incident", request, f"incident_id={incident_id}")
    return incident_payload(incident, actor)


@app.post("/incidents/{incident_id}/reject")
def reject_incident(incident_id: str, request: Request, reason: str = Form(""), actor: Actor = Depends(get_current_actor)):
    incident = engine.reject_incident(actor, incident_id, reason or None)
    write_audit(actor, "reject_incident", request, f"incident_id={incident_id}")
    return incident_payload(incident, actor)


@app.post("/incidents/{incident_id}/reopen")
def reopen_incident(incident_id: str, request: Request, reason: str = Form(""), actor: Actor = Depends(get_current_actor)):
    incident = engine.reopen(actor, incident_id, reason or None)
    write_audit(actor, "reopen_incident", request, f"incident_id={incident_id}")
    return incident_payload(incident, actor)


@app.put("/incidents/{incident_id}/location")
def update_requester_location(
    incident_id: str,
    longitude: float = Form(...),
    latitude: float = Form(...),
    actor: Actor = Depends(get_current_actor),
):
    return incident_payload(engine.update_requester_location(actor, incident_id, longitude, latitude), actor)


@app.put("/incidents/{incident_id}/rating")
def rate_incident(
    incident_id: str,
    score: int = Form(...),
    comment: str = Form(""),
    actor: Actor = Depends(get_current_actor),
):
    return incident_payload(engine.rate_incident(actor, incident_id, score, comment or None), actor)


@app.get("/incidents/{incident_id}/nearby-responders")
def nearby_for_incident(
    incident_id: str,
    radius: float | None = None,
    limit: int = 10,
    actor: Actor = Depends(get_current_actor),
):
    nearby = engine.nearby_for_incident(actor, incident_id, radius_m=radius, limit=limit)
    return {"incident_id": incident_id, "total": len(nearby), "responders": [nearby_to_dict(n) for n in nearby]}


@app.get("/incidents/{incident_id}/tracking")
def incident_tracking(incident_id: str, actor: Actor = Depends(get_current_actor)):
    return {"incident_id": incident_id, "responders": [tracking_to_dict(t) for t in engine.tracking(actor, incident_id)]}


@app.post("/positions")
def update_position(
    longitude: float = Form(...),
    latitude: float = Form(...),
    subject_id: str = Form(""),
    accuracy_m: float | None = Form(None),
    heading_deg: float | None = Form(None),
    speed_mps: float | None = Form(None),
    actor: Actor = Depends(get_current_actor),
):
    position = engine.update_position(
        actor,
        subject_id or actor.id,
        longitude,
        latitude,
        accuracy_m=accuracy_m,
        heading_deg=heading_deg,
        speed_mps=speed_mps,
    )
    return position_to_dict(position)


class PositionUpdateIn(BaseModel):
    subject_id: str | None = None
    longitude: float | None = None
    latitude: float | None = None
    accuracy_m: float | None = None
    heading_deg: float | None = None
    speed_mps: float | None = None


class BulkPositionsIn(BaseModel):
    positions: list[PositionUpdateIn]


@app.get("/positions")
def list_positions(
    role: str | None = None,
    recent: bool = True,
    available: bool = False,
    limit: int = 100,
    actor: Actor = Depends(get_current_actor),
):
    tracked = engine.list_positions(
        actor,
        role=role,
        max_age_minutes=RECENT_POSITION_MINUTES if recent else None,
        available_only=available,
        limit=max(1, min(limit, 500)),
    )
    window = timedelta(minutes=DISPATCH.staleness_minutes)
    now = engine.clock()
    return {"count": len(tracked), "positions": [tracked_to_dict(t, now, window) for t in tracked]}


@app.post("/positions/bulk")
def bulk_update_positions(payload: BulkPositionsIn, request: Request, actor: Actor = Depends(get_current_actor)):
    result = engine.bulk_update_positions(actor, [p.model_dump() for p in payload.positions])
    write_audit(actor, "bulk_update_positions", request, f"ok={len(result.results)};failed={len(result.errors)}")
    return bulk_result_to_dict(result)


@app.get("/positions/nearby")
def nearby_positions(
    longitude: float,
    latitude: float,
    radius: float | None = None,
    limit: int = 20,
    max_age: float | None = None,
    specialization: str | None = None,
    rank: str | None = None,
    unit: str | None = None,
    actor: Actor = Depends(get_current_actor),
):
    nearby = engine.find_nearby(
        actor,
        longitude,
        latitude,
        radius_m=radius,
        limit=limit,
        max_age_minutes=max_age,
        specialization=specialization,
        rank=rank,
        unit=unit,
    )
    return {
        "center": [longitude, latitude],
        "radius": radius if radius is not None else DISPATCH.search_radius_m,
        "count": len(nearby),
        "responders": [nearby_to_dict(n) for n in nearby],
    }


@app.get("/positions/{subject_id}")
def get_position(subject_id: str, actor: Actor = Depends(get_current_actor)):
    return position_to_dict(engine.get_position(actor, subject_id))


@app.delete("/positions/{subject_id}")
def remove_position(subject_id: str, request: Request, actor: Actor = Depends(get_current_actor)):
    position = engine.remove_position(actor, subject_id)
    write_audit(actor, "remove_position", request, f"subject_id={subject_id}")
    return {"ok": True, "removed": position_to_dict(position)}


@app.put("/responders/{responder_id}/availability")
def set_availability(
    responder_id: str,
    request: Request,
    available: bool = Form(...),
    actor: Actor = Depends(get_current_actor),
):
    if actor.id != responder_id:
        require(actor, Permission.MANAGE_SYSTEM)
    if directory.get(responder_id) is None:
        raise HTTPException(status_code=404, detail="Responder not found")
    directory.set_availability(responder_id, available)
    write_audit(actor, "set_availability", request, f"responder_id={responder_id};available={available}")
    return {"ok": True, "responder_id": responder_id, "available": available}


@app.get("/audit-logs")
def audit_logs(actor: Actor = Depends(get_current_actor)):
    require(actor, Permission.MANAGE_SYSTEM)
    with get_conn() as conn:
        rows = conn.execute("SELECT * FROM audit_logs ORDER BY id DESC LIMIT ?", (AUDIT_LOG_LIMIT,)).fetchall()
    return [dict(r) for r in rows]


@app.get("/health")
def health():
    return {"status": "ok"}
