from __future__ import annotations

import logging
from datetime import timedelta
from typing import Iterable, List, Sequence

from dispatch_engine.errors import NoCandidateError
from dispatch_engine.models import Candidate, Point
from dispatch_engine.positions import PositionStore

logger = logging.getLogger(__name__)


class MatchingAlgorithm:
    """Ranks eligible responders by great-circle distance.

    Pure read: selection and commitment are separate steps, and the caller
    re-validates availability when it commits.
    """

    def __init__(self, positions: PositionStore, staleness: timedelta | None = None) -> None:
        self.positions = positions
        if staleness is None:
            staleness = timedelta(minutes=positions.settings.staleness_minutes)
        self.staleness = staleness

    def find_candidates(
        self,
        origin: Point,
        max_distance_m: float,
        top_n: int,
        required_specializations: Iterable[str] = (),
    ) -> List[Candidate]:
        required = {s.upper() for s in required_specializations}
        nearby = self.positions.query(origin, max_distance_m, limit=None, max_age=self.staleness)

        candidates = []
        for item in nearby:
            if required and not required.intersection(s.upper() for s in item.responder.specializations):
                continue
            candidates.append(Candidate(responder=item.responder, distance_m=item.distance_m))
            if len(candidates) >= top_n:
                break

        logger.debug(
            "matching origin=(%s, %s) radius=%s found=%d",
            origin.longitude,
            origin.latitude,
            max_distance_m,
            len(candidates),
        )
        return candidates

    @staticmethod
    def select_best(candidates: Sequence[Candidate]) -> Candidate:
        if not candidates:
            raise NoCandidateError("no eligible responder in range")
        return candidates[0]
