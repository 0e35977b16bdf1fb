from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from dispatch_engine.codec import incident_from_dict, incident_to_dict
from dispatch_engine.errors import ConcurrencyConflictError, NotFoundError
from dispatch_engine.models import Incident, ResponderRecord
from dispatch_engine.store import IncidentFilter

from .config import DB_PATH

logger = logging.getLogger(__name__)


def init_db(db_path: Path = DB_PATH) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS incidents (
                id TEXT PRIMARY KEY,
                requester_id TEXT NOT NULL,
                emergency_type_code TEXT NOT NULL,
                priority INTEGER NOT NULL,
                status TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                document TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS responders (
                id TEXT PRIMARY KEY,
                full_name TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'OFFICER',
                badge_number TEXT,
                rank TEXT,
                unit TEXT,
                specializations TEXT NOT NULL DEFAULT '[]',
                available INTEGER NOT NULL DEFAULT 1,
                active INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor_id TEXT,
                action TEXT NOT NULL,
                ip_address TEXT,
                details TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_incidents_status ON incidents (status, is_active)")


@contextmanager
def get_conn(db_path: Path = DB_PATH):
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteIncidentStore:
    """Incidents as JSON documents; writes are guarded by the version column."""

    def __init__(self, db_path: Path = DB_PATH) -> None:
        self.db_path = db_path

    @staticmethod
    def _columns(incident: Incident) -> tuple:
        return (
            incident.requester_id,
            incident.emergency_type_code,
            incident.priority,
            incident.status.value,
            int(incident.is_active),
            json.dumps(incident_to_dict(incident)),
            incident.updated_at.isoformat(),
        )

    @staticmethod
    def _decode(row: sqlite3.Row) -> Incident:
        incident = incident_from_dict(json.loads(row["document"]))
        incident.version = row["version"]
        return incident

    def insert(self, incident: Incident) -> Incident:
        try:
            with get_conn(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO incidents (
                        requester_id,emergency_type_code,priority,status,is_active,document,updated_at,id,version,created_at
                    ) VALUES (?,?,?,?,?,?,?,?,?,?)
                    """,
                    self._columns(incident) + (incident.id, 1, incident.created_at.isoformat()),
                )
        except sqlite3.IntegrityError as exc:
            raise ConcurrencyConflictError(f"incident {incident.id} already exists") from exc
        return self.get(incident.id)

    def get(self, incident_id: str) -> Incident:
        with get_conn(self.db_path) as conn:
            row = conn.execute("SELECT document, version FROM incidents WHERE id=?", (incident_id,)).fetchone()
        if not row:
            raise NotFoundError("incident not found")
        return self._decode(row)

    def compare_and_swap(self, incident: Incident, expected_version: int) -> Incident:
        with get_conn(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE incidents
                SET requester_id=?, emergency_type_code=?, priority=?, status=?, is_active=?, document=?, updated_at=?,
                    version=version + 1
                WHERE id=? AND version=?
                """,
                self._columns(incident) + (incident.id, expected_version),
            )
            if cursor.rowcount == 0:
                exists = conn.execute("SELECT version FROM incidents WHERE id=?", (incident.id,)).fetchone()
                if not exists:
                    raise NotFoundError("incident not found")
                logger.info(
                    "stale write rejected incident=%s expected=%s current=%s",
                    incident.id,
                    expected_version,
                    exists["version"],
                )
                raise ConcurrencyConflictError("incident was modified concurrently; re-read and retry")
        return self.get(incident.id)

    def _select(self, filters: IncidentFilter) -> List[Incident]:
        clauses, params = [], []
        if filters.active_only:
            clauses.append("is_active=1")
        if filters.status is not None:
            clauses.append("status=?")
            params.append(filters.status.value)
        if filters.emergency_type_code:
            clauses.append("emergency_type_code=?")
            params.append(filters.emergency_type_code.upper())
        if filters.priority is not None:
            clauses.append("priority=?")
            params.append(filters.priority)
        if filters.requester_id:
            clauses.append("requester_id=?")
            params.append(filters.requester_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with get_conn(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT document, version FROM incidents {where} ORDER BY created_at DESC",
                params,
            ).fetchall()

        return [i for i in (self._decode(r) for r in rows) if filters.matches(i)]

    def list(self, filters: IncidentFilter, limit: int = 20, offset: int = 0) -> List[Incident]:
        return self._select(filters)[offset : offset + limit]

    def count(self, filters: IncidentFilter) -> int:
        return len(self._select(filters))


class SqliteResponderDirectory:
    def __init__(self, db_path: Path = DB_PATH) -> None:
        self.db_path = db_path

    def get(self, responder_id: str) -> Optional[ResponderRecord]:
        with get_conn(self.db_path) as conn:
            row = conn.execute("SELECT * FROM responders WHERE id=?", (responder_id,)).fetchone()
        if not row:
            return None
        return ResponderRecord(
            responder_id=row["id"],
            full_name=row["full_name"],
            role=row["role"],
            badge_number=row["badge_number"],
            rank=row["rank"],
            unit=row["unit"],
            specializations=frozenset(json.loads(row["specializations"])),
            available=bool(row["available"]),
            active=bool(row["active"]),
        )

    def upsert(self, responder: ResponderRecord) -> None:
        with get_conn(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO responders (id,full_name,role,badge_number,rank,unit,specializations,available,active,updated_at)
                VALUES (?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                    full_name=excluded.full_name, role=excluded.role, badge_number=excluded.badge_number,
                    rank=excluded.rank, unit=excluded.unit, specializations=excluded.specializations,
                    available=excluded.available, active=excluded.active, updated_at=excluded.updated_at
                """,
                (
                    responder.responder_id,
                    responder.full_name,
                    responder.role,
                    responder.badge_number,
                    responder.rank,
                    responder.unit,
                    json.dumps(sorted(responder.specializations)),
                    int(responder.available),
                    int(responder.active),
                    now_iso(),
                ),
            )

    def set_availability(self, responder_id: str, available: bool) -> None:
        with get_conn(self.db_path) as conn:
            conn.execute(
                "UPDATE responders SET available=?, updated_at=? WHERE id=?",
                (int(available), now_iso(), responder_id),
            )
