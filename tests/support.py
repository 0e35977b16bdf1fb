from __future__ import annotations

from datetime import datetime, timedelta, timezone

from dispatch_engine.models import Point, ResponderRecord

# (-68.12, -16.49) and a point 400 m due north of it.
INCIDENT_POINT = Point(longitude=-68.12, latitude=-16.49)
NORTH_400M = Point(longitude=-68.12, latitude=-16.49 + 0.0035973)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> None:
        self.now += timedelta(minutes=minutes, seconds=seconds)


def officer(responder_id: str, **overrides) -> ResponderRecord:
    fields = dict(
        responder_id=responder_id,
        full_name=f"Officer {responder_id}",
        badge_number="ABC1234",
        rank="SARGENTO",
        unit="Patrulla Norte",
        specializations=frozenset({"PATRULLAJE"}),
    )
    fields.update(overrides)
    return ResponderRecord(**fields)
