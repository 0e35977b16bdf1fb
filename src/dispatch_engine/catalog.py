from __future__ import annotations

from typing import Iterable, List, Optional

from dispatch_engine.errors import ValidationError
from dispatch_engine.models import EmergencyType

DEFAULT_EMERGENCY_TYPES = [
    EmergencyType(code="ROBO", name="Robo / Asalto", priority=3, auto_assign=True, response_minutes=10),
    EmergencyType(code="VIOLENCIA", name="Violencia / Agresion", priority=4, auto_assign=True, response_minutes=8),
    EmergencyType(
        code="ACCIDENTE",
        name="Accidente de transito",
        priority=3,
        required_resources=frozenset({"police", "ambulance"}),
        required_specializations=frozenset({"TRANSITO"}),
        auto_assign=True,
        response_minutes=10,
    ),
    EmergencyType(
        code="INCENDIO",
        name="Incendio",
        priority=4,
        required_resources=frozenset({"police", "firefighter"}),
        auto_assign=True,
        response_minutes=8,
    ),
    EmergencyType(
        code="SALUD",
        name="Emergencia medica",
        priority=4,
        required_resources=frozenset({"ambulance"}),
        response_minutes=8,
    ),
    EmergencyType(code="PERSONA_SOSPECHOSA", name="Persona sospechosa", priority=2, response_minutes=20),
    EmergencyType(code="OTRO", name="Otro", priority=1, response_minutes=30),
]


class EmergencyTypeCatalog:
    """Lookup of emergency types by code. Maintenance happens elsewhere."""

    def __init__(self, types: Iterable[EmergencyType] = DEFAULT_EMERGENCY_TYPES) -> None:
        self._types = {t.code.upper(): t for t in types}

    def get(self, code: str) -> Optional[EmergencyType]:
        return self._types.get(code.strip().upper())

    def require(self, code: str) -> EmergencyType:
        if not code or not code.strip():
            raise ValidationError("emergency type code is required")
        emergency_type = self.get(code)
        if emergency_type is None or not emergency_type.active:
            raise ValidationError(f"emergency type {code!r} is unknown or inactive")
        return emergency_type

    def active(self) -> List[EmergencyType]:
        return sorted(
            (t for t in self._types.values() if t.active),
            key=lambda t: (-t.priority, t.name),
        )
