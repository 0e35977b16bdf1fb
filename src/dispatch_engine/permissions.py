from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from dispatch_engine.errors import PermissionDeniedError, ValidationError
from dispatch_engine.models import Incident


class Role(str, Enum):
    CIVIL = "CIVIL"
    OFFICER = "OFFICER"
    OPERATOR = "OPERATOR"
    ADMIN = "ADMIN"


class Permission(str, Enum):
    VIEW_INCIDENTS = "VIEW_INCIDENTS"
    REPORT_INCIDENTS = "REPORT_INCIDENTS"
    MANAGE_INCIDENTS = "MANAGE_INCIDENTS"
    ASSIGN_OFFICERS = "ASSIGN_OFFICERS"
    ACCESS_MAP = "ACCESS_MAP"
    TRACK_LOCATION = "TRACK_LOCATION"
    MANAGE_SYSTEM = "MANAGE_SYSTEM"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.CIVIL: frozenset({Permission.VIEW_INCIDENTS, Permission.REPORT_INCIDENTS, Permission.TRACK_LOCATION}),
    Role.OFFICER: frozenset({Permission.VIEW_INCIDENTS, Permission.ACCESS_MAP, Permission.TRACK_LOCATION}),
    Role.OPERATOR: frozenset(
        {
            Permission.VIEW_INCIDENTS,
            Permission.REPORT_INCIDENTS,
            Permission.MANAGE_INCIDENTS,
            Permission.ASSIGN_OFFICERS,
            Permission.ACCESS_MAP,
        }
    ),
    Role.ADMIN: frozenset(Permission),
}


@dataclass(frozen=True)
class Actor:
    """The authenticated subject performing an operation."""

    id: str
    role: Role

    @classmethod
    def of(cls, actor_id: str, role: str) -> "Actor":
        try:
            return cls(id=str(actor_id), role=Role(str(role).upper()))
        except ValueError as exc:
            raise ValidationError(f"unknown role {role!r}") from exc

    def can(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS[self.role]


def require(actor: Actor, permission: Permission) -> None:
    if not actor.can(permission):
        raise PermissionDeniedError(f"role {actor.role.value} lacks {permission.value}")


def require_responder_self(actor: Actor, responder_id: str) -> None:
    if actor.role is not Role.OFFICER:
        raise PermissionDeniedError("only responders can act on assignments")
    if actor.id != responder_id:
        raise PermissionDeniedError("responders can only act on their own assignment")


def require_requester_or(actor: Actor, incident: Incident, permission: Permission) -> None:
    if actor.id == incident.requester_id or actor.can(permission):
        return
    raise PermissionDeniedError("only the requester or an operator may do this")


def require_resolver(actor: Actor, incident: Incident) -> None:
    # Any non-terminal assignment counts, including one still PENDING.
    if actor.can(Permission.MANAGE_INCIDENTS):
        return
    if incident.assignment_for(actor.id) is not None:
        return
    raise PermissionDeniedError("not permitted to resolve this incident")
