from __future__ import annotations

import logging

from dispatch_engine.directory import InMemoryResponderDirectory
from dispatch_engine.engine import DispatchEngine
from dispatch_engine.geo import validate_point
from dispatch_engine.models import ResponderRecord
from dispatch_engine.permissions import Actor, Role
from dispatch_engine.store import InMemoryIncidentStore


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    directory = InMemoryResponderDirectory(
        [
            ResponderRecord(
                responder_id="OF-12",
                full_name="Ana Quispe",
                badge_number="ABC1234",
                rank="SARGENTO",
                unit="Patrulla Norte",
                specializations=frozenset({"PATRULLAJE"}),
            ),
            ResponderRecord(
                responder_id="OF-7",
                full_name="Luis Mamani",
                badge_number="XYZ5678",
                rank="TENIENTE",
                unit="Transito Centro",
                specializations=frozenset({"TRANSITO"}),
            ),
            ResponderRecord(
                responder_id="OF-3",
                full_name="Rosa Condori",
                badge_number="QRS1111",
                rank="CABO",
                unit="Patrulla Sur",
                available=False,
            ),
        ]
    )
    engine = DispatchEngine(store=InMemoryIncidentStore(), directory=directory)

    engine.positions.update("OF-12", validate_point(-68.1195, -16.4930))
    engine.positions.update("OF-7", validate_point(-68.1350, -16.5010))
    engine.positions.update("OF-3", validate_point(-68.1201, -16.4899))

    requester = Actor(id="CIV-1", role=Role.CIVIL)
    created = engine.create_incident(
        requester,
        "ROBO",
        longitude=-68.12,
        latitude=-16.49,
        description="Phone snatched near the plaza, suspect ran north.",
    )
    incident = created.incident

    print("=== Incident Dispatch ===")
    print(f"Incident: {incident.id} ({incident.emergency_type.name}, priority {incident.priority})")
    print(f"Status after creation: {incident.status.value}")
    if created.auto_assignment:
        auto = created.auto_assignment
        eta = f"{auto.eta:%H:%M:%S} UTC" if auto.eta else "n/a"
        print(f"Auto-assigned {auto.responder_id} at {auto.distance_m} m (ETA {eta})")
    for warning in created.warnings:
        print(f"Warning: {warning}")

    officer = Actor(id="OF-12", role=Role.OFFICER)
    engine.accept_assignment(officer, incident.id)
    engine.start_travel(officer, incident.id)
    engine.positions.update("OF-12", validate_point(-68.1199, -16.4901))
    engine.mark_arrived(officer, incident.id)
    incident = engine.resolve(officer, incident.id, "Suspect detained, phone returned", actions_taken=["Detention"])

    print(f"\nFinal status: {incident.status.value}")
    print(f"Response time: {incident.response_time_minutes} min, resolution time: {incident.resolution_time_minutes} min")
    print("\nTimeline:")
    for event in incident.timeline:
        marker = "" if event.public else " (internal)"
        print(f" - {event.timestamp:%H:%M:%S} {event.action}: {event.description}{marker}")


if __name__ == "__main__":
    main()
