"""SQLite-backed cost event ledger and alert sink.

Each mutating call is a single autocommit statement, so a reservation is
visible to every other connection as soon as ``append`` returns. That is
the property the reservation protocol relies on across processes.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from runwarden.budget.models import (
    AlertType,
    BudgetAlert,
    BudgetLevel,
    CostEvent,
    CostEventStatus,
    CostScope,
)
from runwarden.budget.store import ReservationNotFoundError

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS cost_events (
    id              TEXT PRIMARY KEY,
    run_id          TEXT,
    agent_id        TEXT NOT NULL,
    tenant_id       TEXT,
    user_id         TEXT,
    provider        TEXT NOT NULL DEFAULT '',
    model_name      TEXT NOT NULL DEFAULT '',
    cost_usd        REAL NOT NULL DEFAULT 0,
    billed_cost_usd REAL,
    status          TEXT NOT NULL,
    created_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cost_events_agent  ON cost_events(agent_id, created_at);
CREATE INDEX IF NOT EXISTS idx_cost_events_tenant ON cost_events(tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_cost_events_status ON cost_events(status);

CREATE TABLE IF NOT EXISTS budget_alerts (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    level             TEXT NOT NULL,
    type              TEXT NOT NULL,
    organization_id   TEXT,
    user_id           TEXT,
    agent_id          TEXT,
    percent_used      REAL NOT NULL,
    current_spend_usd REAL NOT NULL,
    limit_usd         REAL NOT NULL,
    message           TEXT NOT NULL,
    created_at        TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_budget_alerts_level ON budget_alerts(level, type, created_at);
"""

_EVENT_COLUMNS = (
    "id",
    "run_id",
    "agent_id",
    "tenant_id",
    "user_id",
    "provider",
    "model_name",
    "cost_usd",
    "billed_cost_usd",
    "status",
    "created_at",
)
_UPDATABLE = frozenset(_EVENT_COLUMNS) - {"id"}


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so text comparison orders chronologically."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _to_db(column: str, value: Any) -> Any:
    if column == "status":
        return CostEventStatus(value).value
    if column == "created_at":
        return _ts(value)
    return value


def _row_to_event(row: sqlite3.Row) -> CostEvent:
    data = dict(row)
    data["status"] = CostEventStatus(data["status"])
    data["created_at"] = datetime.fromisoformat(data["created_at"])
    return CostEvent(**data)


class SqliteLedger:
    """Owns the SQLite connection shared by the event store and alert sink."""

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        *,
        _conn: sqlite3.Connection | None = None,
    ) -> None:
        """Open or create a ledger database.

        Args:
            db_path: Path to the ``.db`` file, or ``":memory:"``.
            _conn: Pre-existing connection (for testing).
        """
        if _conn is not None:
            self._conn = _conn
        else:
            self._conn = sqlite3.connect(str(db_path), isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.executescript(_SCHEMA)
        self.events = SqliteCostEventStore(self._conn)
        self.alerts = SqliteAlertSink(self._conn)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()


class SqliteCostEventStore:
    """``CostEventStore`` over the ``cost_events`` table.

    Statements run synchronously on the event loop. Each is a single indexed
    autocommit query, short enough that parallel phase gates only queue
    briefly behind one another.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def append(self, event: CostEvent) -> CostEvent:
        values = [_to_db(c, getattr(event, c)) for c in _EVENT_COLUMNS]
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        self._conn.execute(
            f"INSERT INTO cost_events ({', '.join(_EVENT_COLUMNS)}) VALUES ({placeholders})",
            values,
        )
        return event

    async def get(self, event_id: str) -> CostEvent | None:
        row = self._conn.execute("SELECT * FROM cost_events WHERE id = ?", (event_id,)).fetchone()
        return _row_to_event(row) if row else None

    async def update(self, event_id: str, **fields: Any) -> CostEvent:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update cost event fields: {sorted(unknown)}")
        if fields:
            assignments = ", ".join(f"{c} = ?" for c in fields)
            values = [_to_db(c, v) for c, v in fields.items()]
            cursor = self._conn.execute(
                f"UPDATE cost_events SET {assignments} WHERE id = ?", [*values, event_id]
            )
            if cursor.rowcount == 0:
                raise ReservationNotFoundError(event_id)
        event = await self.get(event_id)
        if event is None:
            raise ReservationNotFoundError(event_id)
        return event

    async def sum_since(self, scope: CostScope, since: datetime) -> float:
        clauses = ["status != ?", "created_at >= ?"]
        params: list[Any] = [CostEventStatus.CANCELLED.value, _ts(since)]
        for column in ("agent_id", "user_id", "tenant_id"):
            value = getattr(scope, column)
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        row = self._conn.execute(
            "SELECT COALESCE(SUM(COALESCE(billed_cost_usd, cost_usd)), 0) AS total "
            f"FROM cost_events WHERE {' AND '.join(clauses)}",
            params,
        ).fetchone()
        return float(row["total"])

    async def cancel_reserved_before(self, cutoff: datetime) -> int:
        cursor = self._conn.execute(
            "UPDATE cost_events SET status = ?, cost_usd = 0, billed_cost_usd = 0 "
            "WHERE status = ? AND created_at < ?",
            (CostEventStatus.CANCELLED.value, CostEventStatus.RESERVED.value, _ts(cutoff)),
        )
        return cursor.rowcount


class SqliteAlertSink:
    """``AlertSink`` over the ``budget_alerts`` table."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def recent(
        self,
        *,
        level: BudgetLevel,
        type: AlertType,
        organization_id: str | None,
        user_id: str | None,
        agent_id: str | None,
        since: datetime,
    ) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM budget_alerts WHERE level = ? AND type = ? AND created_at >= ? "
            "AND organization_id IS ? AND user_id IS ? AND agent_id IS ? LIMIT 1",
            (
                level.value,
                type.value,
                _ts(since),
                organization_id,
                user_id,
                agent_id,
            ),
        ).fetchone()
        return row is not None

    async def emit(self, alert: BudgetAlert) -> None:
        self._conn.execute(
            "INSERT INTO budget_alerts (level, type, organization_id, user_id, agent_id, "
            "percent_used, current_spend_usd, limit_usd, message, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                alert.level.value,
                alert.type.value,
                alert.organization_id,
                alert.user_id,
                alert.agent_id,
                alert.percent_used,
                alert.current_spend_usd,
                alert.limit_usd,
                alert.message,
                _ts(alert.created_at),
            ),
        )

    def list_alerts(self) -> list[BudgetAlert]:
        rows = self._conn.execute("SELECT * FROM budget_alerts ORDER BY id").fetchall()
        return [
            BudgetAlert(
                level=BudgetLevel(r["level"]),
                type=AlertType(r["type"]),
                organization_id=r["organization_id"],
                user_id=r["user_id"],
                agent_id=r["agent_id"],
                percent_used=r["percent_used"],
                current_spend_usd=r["current_spend_usd"],
                limit_usd=r["limit_usd"],
                message=r["message"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]
