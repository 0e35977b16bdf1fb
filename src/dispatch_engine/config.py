from __future__ import annotations

import os
from dataclasses import dataclass, field

EARTH_RADIUS_M = 6_371_000.0
JITTER_THRESHOLD_M = 1.0
ACCURATE_THRESHOLD_M = 50.0
MOVING_THRESHOLD_MPS = 0.5


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class DispatchSettings:
    staleness_minutes: float = 15
    search_radius_m: float = 5000
    top_n: int = 10
    assumed_speed_kph: float = 40
    timeline_capacity: int = 100
    history_capacity: int = 10
    resource_class: str = "police"
    responder_roles: frozenset[str] = field(default_factory=lambda: frozenset({"OFFICER"}))

    @classmethod
    def from_env(cls) -> "DispatchSettings":
        return cls(
            staleness_minutes=_env_float("DISPATCH_STALENESS_MINUTES", 15),
            search_radius_m=_env_float("DISPATCH_SEARCH_RADIUS_M", 5000),
            top_n=_env_int("DISPATCH_TOP_N", 10),
            assumed_speed_kph=_env_float("DISPATCH_ASSUMED_SPEED_KPH", 40),
            timeline_capacity=_env_int("DISPATCH_TIMELINE_CAPACITY", 100),
            history_capacity=_env_int("DISPATCH_HISTORY_CAPACITY", 10),
            resource_class=os.getenv("DISPATCH_RESOURCE_CLASS", "police").lower(),
        )
