from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from dispatch_engine.config import JITTER_THRESHOLD_M, DispatchSettings
from dispatch_engine.directory import ResponderDirectory
from dispatch_engine.geo import haversine_m
from dispatch_engine.models import NearbyResponder, Point, Position, PositionFix, TrackedPosition
from dispatch_engine.ring import RingBuffer

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PositionStore:
    """Latest position per tracked subject plus a short movement history.

    Created once per process and shared by every request. Readers get copies,
    so a returned ``Position`` never changes underneath the caller.
    """

    def __init__(
        self,
        directory: ResponderDirectory,
        settings: DispatchSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.directory = directory
        self.settings = settings or DispatchSettings()
        self.clock = clock
        self._positions: dict[str, Position] = {}
        self._lock = threading.Lock()

    def update(
        self,
        subject_id: str,
        point: Point,
        accuracy_m: float | None = None,
        heading_deg: float | None = None,
        speed_mps: float | None = None,
    ) -> Position:
        now = self.clock()
        with self._lock:
            previous = self._positions.get(subject_id)
            if previous is None:
                position = Position(
                    subject_id=subject_id,
                    point=point,
                    updated_at=now,
                    history=RingBuffer(self.settings.history_capacity),
                    accuracy_m=accuracy_m,
                    heading_deg=heading_deg,
                    speed_mps=speed_mps,
                )
            else:
                moved = haversine_m(previous.point, point)
                previous.history.append(previous.as_fix())
                previous.point = point
                previous.updated_at = now
                previous.accuracy_m = accuracy_m
                previous.heading_deg = heading_deg
                previous.speed_mps = speed_mps
                if moved >= JITTER_THRESHOLD_M:
                    previous.distance_traveled_m += moved
                position = previous

            self._recompute_speeds(position)
            self._positions[subject_id] = position
            logger.debug("position updated subject=%s lon=%s lat=%s", subject_id, point.longitude, point.latitude)
            return copy.deepcopy(position)

    @staticmethod
    def _recompute_speeds(position: Position) -> None:
        fixes: List[PositionFix] = position.history.to_list() + [position.as_fix()]
        speeds = []
        for before, after in zip(fixes, fixes[1:]):
            elapsed = (after.recorded_at - before.recorded_at).total_seconds()
            if elapsed <= 0:
                continue
            distance = haversine_m(before.point, after.point)
            if distance < JITTER_THRESHOLD_M:
                distance = 0.0
            speeds.append(distance / elapsed)

        if speeds:
            position.average_speed_mps = round(sum(speeds) / len(speeds), 3)
            position.max_speed_mps = round(max(speeds), 3)

    def get(self, subject_id: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(subject_id)
            return copy.deepcopy(position) if position else None

    def query(
        self,
        origin: Point,
        radius_m: float,
        limit: int | None = None,
        max_age: timedelta | None = None,
    ) -> List[NearbyResponder]:
        """Fresh positions of available, active responders within radius, nearest first."""
        window = max_age if max_age is not None else timedelta(minutes=self.settings.staleness_minutes)
        now = self.clock()
        with self._lock:
            snapshot = [copy.deepcopy(p) for p in self._positions.values()]

        found = []
        for position in snapshot:
            if not position.is_recent(now, window):
                continue
            responder = self.directory.get(position.subject_id)
            if responder is None or not responder.active or not responder.available:
                continue
            if responder.role not in self.settings.responder_roles:
                continue
            distance = haversine_m(origin, position.point)
            if distance > radius_m:
                continue
            found.append(NearbyResponder(responder=responder, distance_m=distance, position=position))

        found.sort(key=lambda item: item.distance_m)
        if limit is not None:
            found = found[:limit]
        return found

    def find_nearby(
        self,
        origin: Point,
        radius_m: float,
        limit: int = 20,
        max_age: timedelta | None = None,
        specialization: str | None = None,
        rank: str | None = None,
        unit: str | None = None,
    ) -> List[NearbyResponder]:
        nearby = self.query(origin, radius_m, limit=None, max_age=max_age)
        if specialization:
            nearby = [n for n in nearby if specialization in n.responder.specializations]
        if rank:
            nearby = [n for n in nearby if n.responder.rank == rank]
        if unit:
            nearby = [n for n in nearby if n.responder.unit == unit]
        return nearby[:limit]

    def list(
        self,
        role: str | None = None,
        max_age: timedelta | None = None,
        available_only: bool = False,
        limit: int = 100,
    ) -> List[TrackedPosition]:
        """Tracked positions, most recently updated first.

        ``role`` and ``available_only`` are checked against the directory, so
        subjects it does not know are dropped when either is given.
        """
        now = self.clock()
        with self._lock:
            snapshot = [copy.deepcopy(p) for p in self._positions.values()]
        snapshot.sort(key=lambda p: p.updated_at, reverse=True)

        tracked = []
        for position in snapshot:
            if max_age is not None and not position.is_recent(now, max_age):
                continue
            responder = self.directory.get(position.subject_id)
            if role and (responder is None or responder.role != role.upper()):
                continue
            if available_only and (responder is None or not responder.active or not responder.available):
                continue
            tracked.append(TrackedPosition(position=position, responder=responder))
            if len(tracked) >= limit:
                break
        return tracked

    def remove(self, subject_id: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.pop(subject_id, None)
        if position is not None:
            logger.info("position removed subject=%s", subject_id)
        return position

    def __len__(self) -> int:
        with self._lock:
            return len(self._positions)
