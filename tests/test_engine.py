import threading

import pytest

from support import INCIDENT_POINT, NORTH_400M, officer
from dispatch_engine.engine import DispatchEngine
from dispatch_engine.errors import (
    ConcurrencyConflictError,
    NoCandidateError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from dispatch_engine.models import AssignmentStatus, IncidentStatus, Point
from dispatch_engine.permissions import Actor, Role
from dispatch_engine.positions import PositionStore
from dispatch_engine.store import IncidentFilter, InMemoryIncidentStore


def _report(engine, requester, code="ROBO", point=INCIDENT_POINT):
    return engine.create_incident(requester, code, point.longitude, point.latitude, description="help")


def test_auto_assigns_nearest_available_responder(engine, requester) -> None:
    engine.positions.update("of-1", NORTH_400M)

    result = _report(engine, requester)

    incident = result.incident
    assert incident.status is IncidentStatus.ASSIGNED
    assert len(incident.assignments) == 1
    assert incident.assignments[0].responder_id == "of-1"
    assert incident.assignments[0].assigned_by == "system"
    assert result.auto_assignment.responder_id == "of-1"
    assert result.auto_assignment.distance_m == pytest.approx(400, abs=0.5)
    assert result.auto_assignment.eta is not None
    assert result.warnings == []


def test_auto_assign_failure_is_a_warning(engine, requester) -> None:
    result = _report(engine, requester)

    assert result.incident.status is IncidentStatus.OPEN
    assert result.auto_assignment is None
    assert result.warnings == ["no eligible responder in range"]
    assert result.incident.timeline[-1].action == "AUTO_ASSIGN_FAILED"


def test_types_without_auto_dispatch_stay_pending(engine, requester) -> None:
    engine.positions.update("of-1", NORTH_400M)
    result = _report(engine, requester, code="OTRO")
    assert result.incident.status is IncidentStatus.PENDING
    assert result.auto_assignment is None
    assert result.warnings == []


def test_invalid_input_is_rejected_before_anything_is_stored(engine, requester) -> None:
    with pytest.raises(ValidationError):
        engine.create_incident(requester, "ROBO", -200, 0)
    with pytest.raises(ValidationError):
        engine.create_incident(requester, "NOPE", -68.12, -16.49)
    assert engine.store.list(IncidentFilter(active_only=False)) == []


def test_officer_cannot_report(engine) -> None:
    with pytest.raises(PermissionDeniedError):
        engine.create_incident(Actor("of-1", Role.OFFICER), "ROBO", -68.12, -16.49)


def test_manual_assignment_revalidates_availability(engine, requester, operator, directory) -> None:
    incident = _report(engine, requester, code="OTRO").incident
    directory.put(officer("of-2", available=False))

    with pytest.raises(StateConflictError, match="not available"):
        engine.assign_responder(operator, incident.id, "of-2")
    with pytest.raises(NotFoundError):
        engine.assign_responder(operator, incident.id, "ghost")
    with pytest.raises(PermissionDeniedError):
        engine.assign_responder(requester, incident.id, "of-1")

    assigned = engine.assign_responder(operator, incident.id, "of-1")
    assert assigned.assigned_by == "op-1"
    assert assigned.status is IncidentStatus.ASSIGNED


def test_auto_assign_skips_responders_already_on_the_incident(engine, requester, operator) -> None:
    engine.positions.update("of-1", NORTH_400M)
    engine.positions.update("of-2", Point(-68.12, -16.50))
    incident = _report(engine, requester).incident

    incident, result = engine.auto_assign(operator, incident.id)

    assert result.responder_id == "of-2"
    assert [a.responder_id for a in incident.assignments] == ["of-1", "of-2"]


def test_auto_assign_reports_responder_gone_unavailable(engine, requester, directory) -> None:
    engine.positions.update("of-1", NORTH_400M)
    incident = _report(engine, requester, code="OTRO").incident

    # Busy between selection and commit.
    original = engine.matching.find_candidates

    def find_then_go_busy(*args, **kwargs):
        found = original(*args, **kwargs)
        directory.put(officer("of-1", available=False))
        return found

    engine.matching.find_candidates = find_then_go_busy
    incident = engine.store.get(incident.id)
    with pytest.raises(NoCandidateError, match="not available"):
        engine._dispatch_nearest(incident.id, "op-1")
    assert engine.store.get(incident.id).assignments == []


def test_auto_assign_requires_matching_resource(engine, requester, operator) -> None:
    incident = _report(engine, requester, code="SALUD").incident
    with pytest.raises(StateConflictError, match="does not require police"):
        engine.auto_assign(operator, incident.id)


def test_responder_workflow_and_resolution(engine, requester, operator) -> None:
    engine.positions.update("of-1", NORTH_400M)
    incident = _report(engine, requester).incident
    responder = Actor("of-1", Role.OFFICER)

    with pytest.raises(PermissionDeniedError):
        engine.accept_assignment(Actor("of-2", Role.OFFICER), incident.id, "of-1")
    with pytest.raises(PermissionDeniedError):
        engine.accept_assignment(operator, incident.id)

    engine.accept_assignment(responder, incident.id)
    engine.start_travel(responder, incident.id)
    engine.mark_arrived(responder, incident.id)
    with pytest.raises(PermissionDeniedError):
        engine.resolve(Actor("of-2", Role.OFFICER), incident.id, "done")

    resolved = engine.resolve(responder, incident.id, "Suspect detained")
    assert resolved.status is IncidentStatus.RESOLVED
    assert resolved.assignments[0].status is AssignmentStatus.COMPLETED

    with pytest.raises(PermissionDeniedError):
        engine.rate_incident(operator, incident.id, 5)
    rated = engine.rate_incident(requester, incident.id, 5, "fast")
    assert rated.rating.score == 5


def test_resolve_with_zero_assignments(engine, requester, operator) -> None:
    incident = _report(engine, requester, code="OTRO").incident
    with pytest.raises(ValidationError):
        engine.resolve(operator, incident.id, "")

    resolved = engine.resolve(operator, incident.id, "No action needed", actions_taken=["Phone follow-up"])

    assert resolved.status is IncidentStatus.RESOLVED
    assert resolved.resolution.description == "No action needed"
    assert resolved.resolution.actions_taken == ["Phone follow-up"]
    assert resolved.assignments == []
    assert not resolved.is_active


def test_rejecting_last_assignment_reverts_to_open(engine, requester, operator) -> None:
    engine.positions.update("of-1", NORTH_400M)
    incident = _report(engine, requester).incident

    with pytest.raises(PermissionDeniedError):
        engine.reject_assignment(Actor("of-2", Role.OFFICER), incident.id, "of-1")

    reopened = engine.reject_assignment(Actor("of-1", Role.OFFICER), incident.id, reason="off shift")

    assert reopened.status is IncidentStatus.OPEN
    assert reopened.assignments == []


def test_dispatcher_can_unassign(engine, requester, operator) -> None:
    incident = _report(engine, requester, code="OTRO").incident
    engine.assign_responder(operator, incident.id, "of-1")
    updated = engine.reject_assignment(operator, incident.id, "of-1", "reassigning")
    assert updated.status is IncidentStatus.OPEN


def test_cancel_and_reopen_permissions(engine, requester, operator) -> None:
    incident = _report(engine, requester, code="OTRO").incident
    stranger = Actor("civ-9", Role.CIVIL)

    with pytest.raises(PermissionDeniedError):
        engine.cancel(stranger, incident.id)
    cancelled = engine.cancel(requester, incident.id, "resolved itself")
    assert cancelled.status is IncidentStatus.CANCELLED

    with pytest.raises(PermissionDeniedError):
        engine.reopen(requester, incident.id)
    assert engine.reopen(operator, incident.id).status is IncidentStatus.OPEN

    rejected = engine.reject_incident(operator, incident.id, "duplicate report")
    assert rejected.status is IncidentStatus.REJECTED


def test_civilians_only_see_their_own_incidents(engine, requester) -> None:
    mine = _report(engine, requester, code="OTRO").incident
    _report(engine, Actor("civ-2", Role.CIVIL), code="OTRO")

    assert [i.id for i in engine.list_incidents(requester)] == [mine.id]
    assert len(engine.list_incidents(Actor("op-1", Role.OPERATOR))) == 2
    with pytest.raises(PermissionDeniedError):
        engine.get_incident(Actor("civ-2", Role.CIVIL), mine.id)


def test_requester_moves_and_tracking_follows(engine, requester, clock) -> None:
    engine.positions.update("of-1", NORTH_400M)
    incident = _report(engine, requester).incident

    moved = engine.update_requester_location(requester, incident.id, NORTH_400M.longitude, NORTH_400M.latitude)
    assert moved.location == NORTH_400M
    with pytest.raises(ValidationError):
        engine.update_requester_location(requester, incident.id, 0, 95)

    tracking = engine.tracking(requester, incident.id)
    assert len(tracking) == 1
    assert tracking[0].distance_m == 0
    assert tracking[0].is_recent

    clock.advance(minutes=20)
    assert not engine.tracking(requester, incident.id)[0].is_recent


def test_position_updates_are_self_service(engine) -> None:
    with pytest.raises(PermissionDeniedError):
        engine.update_position(Actor("of-2", Role.OFFICER), "of-1", -68.12, -16.49)
    with pytest.raises(ValidationError):
        engine.update_position(Actor("of-1", Role.OFFICER), "of-1", -68.12, -100)

    position = engine.update_position(Actor("of-1", Role.OFFICER), "of-1", -68.12, -16.49, accuracy_m=8, speed_mps=3)
    assert position.is_accurate
    assert position.is_moving
    assert engine.get_position(Actor("op-1", Role.OPERATOR), "of-1").point == INCIDENT_POINT
    with pytest.raises(NotFoundError):
        engine.get_position(Actor("op-1", Role.OPERATOR), "of-2")


def test_find_nearby_and_nearby_for_incident(engine, requester, operator) -> None:
    engine.positions.update("of-1", NORTH_400M)
    engine.positions.update("of-2", Point(-68.12, -16.53))
    incident = _report(engine, requester, code="OTRO").incident

    nearby = engine.find_nearby(operator, -68.12, -16.49, radius_m=1000)
    assert [n.responder.responder_id for n in nearby] == ["of-1"]
    with pytest.raises(PermissionDeniedError):
        engine.find_nearby(requester, -68.12, -16.49)

    around = engine.nearby_for_incident(operator, incident.id)
    assert [n.responder.responder_id for n in around] == ["of-1", "of-2"]


def test_concurrent_assignments_never_overwrite_each_other(engine, requester, operator) -> None:
    incident = _report(engine, requester, code="OTRO").incident
    barrier = threading.Barrier(3)
    outcomes = {}

    def assign(responder_id: str) -> None:
        barrier.wait()
        try:
            engine.assign_responder(operator, incident.id, responder_id)
            outcomes[responder_id] = "ok"
        except ConcurrencyConflictError:
            outcomes[responder_id] = "conflict"

    threads = [threading.Thread(target=assign, args=(r,)) for r in ("of-1", "of-2", "of-3")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    stored = engine.store.get(incident.id)
    succeeded = sorted(r for r, outcome in outcomes.items() if outcome == "ok")
    assert len(outcomes) == 3
    assert succeeded
    assert sorted(a.responder_id for a in stored.assignments) == succeeded
    assert stored.version == 1 + len(succeeded)
    assert stored.status is IncidentStatus.ASSIGNED


def test_lost_race_surfaces_as_concurrency_conflict(engine, requester, operator) -> None:
    incident = _report(engine, requester, code="OTRO").incident
    stale = engine.store.get(incident.id)
    engine.assign_responder(operator, incident.id, "of-1")

    engine.machine.assign(stale, officer("of-2"), "op-2")
    with pytest.raises(ConcurrencyConflictError):
        engine.store.compare_and_swap(stale, stale.version)
    assert [a.responder_id for a in engine.store.get(incident.id).assignments] == ["of-1"]


def test_zero_radius_is_not_replaced_by_the_default(engine, requester, operator) -> None:
    engine.positions.update("of-1", NORTH_400M)
    incident = _report(engine, requester, code="OTRO").incident

    assert engine.find_nearby(operator, -68.12, -16.49, radius_m=0) == []
    assert engine.nearby_for_incident(operator, incident.id, radius_m=0) == []
    assert len(engine.find_nearby(operator, -68.12, -16.49)) == 1


def test_zero_max_age_excludes_older_positions(engine, operator, clock) -> None:
    engine.positions.update("of-1", NORTH_400M)
    clock.advance(minutes=1)
    assert engine.find_nearby(operator, -68.12, -16.49, max_age_minutes=0) == []
    assert engine.list_positions(operator, max_age_minutes=0) == []


@pytest.mark.parametrize(
    "kwargs",
    [{"radius_m": -1}, {"limit": -1}, {"max_age_minutes": -5}],
)
def test_negative_search_arguments_are_rejected(engine, operator, kwargs) -> None:
    with pytest.raises(ValidationError):
        engine.find_nearby(operator, -68.12, -16.49, **kwargs)


def test_list_positions_is_for_dispatchers(engine, operator, directory, clock) -> None:
    engine.positions.update("of-1", NORTH_400M)
    clock.advance(seconds=10)
    engine.positions.update("civ-1", INCIDENT_POINT)
    clock.advance(seconds=10)
    directory.put(officer("of-2", available=False))
    engine.positions.update("of-2", INCIDENT_POINT)

    with pytest.raises(PermissionDeniedError):
        engine.list_positions(Actor("of-1", Role.OFFICER))
    assert [t.position.subject_id for t in engine.list_positions(operator, role="OFFICER")] == ["of-2", "of-1"]
    assert [t.position.subject_id for t in engine.list_positions(operator, available_only=True)] == ["of-1"]


def test_bulk_update_reports_bad_entries_individually(engine, operator) -> None:
    result = engine.bulk_update_positions(
        operator,
        [
            {"subject_id": "of-1", "longitude": -68.12, "latitude": -16.49, "speed_mps": 2.0},
            {"subject_id": "of-2", "longitude": -68.12},
            {"subject_id": "ghost", "longitude": -68.12, "latitude": -16.49},
            {"subject_id": "of-3", "longitude": -68.12, "latitude": 120},
        ],
    )

    assert [p.subject_id for p in result.results] == ["of-1"]
    assert [(e.subject_id, e.reason) for e in result.errors][:2] == [
        ("of-2", "incomplete entry"),
        ("ghost", "responder not found"),
    ]
    assert result.errors[2].subject_id == "of-3"
    assert result.processed == 4
    assert engine.positions.get("of-1").is_moving
    assert engine.positions.get("of-3") is None

    with pytest.raises(ValidationError):
        engine.bulk_update_positions(operator, [])
    with pytest.raises(PermissionDeniedError):
        engine.bulk_update_positions(Actor("of-1", Role.OFFICER), [{"subject_id": "of-1"}])


def test_remove_position_is_admin_only(engine, operator) -> None:
    engine.positions.update("of-1", NORTH_400M)
    admin = Actor("admin-1", Role.ADMIN)

    with pytest.raises(PermissionDeniedError):
        engine.remove_position(operator, "of-1")
    assert engine.remove_position(admin, "of-1").point == NORTH_400M
    with pytest.raises(NotFoundError):
        engine.remove_position(admin, "of-1")
    with pytest.raises(NotFoundError):
        engine.get_position(operator, "of-1")


def test_paged_listing_counts_every_match(engine, requester, operator) -> None:
    for _ in range(3):
        _report(engine, requester, code="OTRO")
    _report(engine, Actor("civ-2", Role.CIVIL), code="OTRO")

    page = engine.page_incidents(operator, page=2, limit=3)
    assert page.total == 4
    assert len(page.incidents) == 1
    assert page.total_pages == 2
    assert not page.has_next
    assert page.has_prev

    mine = engine.page_incidents(requester, limit=2)
    assert mine.total == 3
    assert mine.has_next
    assert {i.requester_id for i in mine.incidents} == {"civ-1"}

    with pytest.raises(ValidationError):
        engine.page_incidents(operator, page=0)


def test_auto_dispatch_ignores_assignments_on_other_incidents(engine, requester) -> None:
    engine.positions.update("of-1", NORTH_400M)

    first = _report(engine, requester).incident
    second = _report(engine, requester).incident

    assert first.assignments[0].responder_id == "of-1"
    assert second.assignments[0].responder_id == "of-1"


def test_cancel_during_auto_dispatch_is_not_overwritten(engine, requester) -> None:
    def cancel_then_find_nothing(*args, **kwargs):
        for incident in engine.store.list(IncidentFilter()):
            engine.cancel(requester, incident.id, "false alarm")
        return []

    engine.matching.find_candidates = cancel_then_find_nothing
    result = _report(engine, requester)

    assert result.warnings == ["no eligible responder in range"]
    assert result.incident.status is IncidentStatus.CANCELLED
    assert "AUTO_ASSIGN_FAILED" not in [e.action for e in result.incident.timeline]


def test_engine_keeps_an_empty_position_store_it_is_given(directory, clock) -> None:
    shared = PositionStore(directory, clock=clock)
    engine = DispatchEngine(store=InMemoryIncidentStore(), directory=directory, positions=shared, clock=clock)

    assert engine.positions is shared
    engine.update_position(Actor("of-1", Role.OFFICER), "of-1", -68.12, -16.49)
    assert len(shared) == 1
