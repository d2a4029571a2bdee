"""SQLite state persistence with WAL mode."""

from __future__ import annotations

import json
import logging

import aiosqlite

from .models import (
    REVIEW_THRESHOLD,
    ActivityLogEntry,
    Feedback,
    Resolution,
    ResolutionMethod,
    ResolutionStatus,
    Step,
    StepStatus,
    StepType,
    now_iso,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS resolutions (
    id TEXT PRIMARY KEY,
    issue_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    method TEXT NOT NULL DEFAULT 'agent',
    status TEXT NOT NULL DEFAULT 'pending',
    resolved_at TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS steps (
    id TEXT NOT NULL,
    resolution_id TEXT NOT NULL REFERENCES resolutions(id),
    idx INTEGER NOT NULL,
    label TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    type TEXT NOT NULL DEFAULT 'info',
    message TEXT DEFAULT '',
    timestamp TEXT DEFAULT '',
    duration_ms INTEGER,
    input_text TEXT DEFAULT '',
    output_text TEXT DEFAULT '',
    confidence INTEGER,
    needs_review INTEGER DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (resolution_id, id)
);

CREATE TABLE IF NOT EXISTS activity_log (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    resolution_id TEXT NOT NULL,
    id TEXT NOT NULL,
    idx INTEGER NOT NULL,
    label TEXT NOT NULL,
    status TEXT NOT NULL,
    type TEXT NOT NULL,
    message TEXT DEFAULT '',
    timestamp TEXT NOT NULL,
    duration_ms INTEGER,
    step_id TEXT
);

CREATE TABLE IF NOT EXISTS feedback (
    resolution_id TEXT NOT NULL,
    step_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    submitted_at TEXT NOT NULL,
    PRIMARY KEY (resolution_id, step_id)
);

CREATE INDEX IF NOT EXISTS idx_resolutions_issue ON resolutions(issue_id);
CREATE INDEX IF NOT EXISTS idx_steps_resolution ON steps(resolution_id);
CREATE INDEX IF NOT EXISTS idx_activity_resolution ON activity_log(resolution_id);
"""


class Database:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()
        logger.debug("Opened database %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    # ---------------------------------------------------------------
    # Resolution CRUD
    # ---------------------------------------------------------------

    async def upsert_resolution(self, res: Resolution) -> None:
        now = now_iso()
        if not res.created_at:
            res.created_at = now
        await self._conn.execute(
            """INSERT INTO resolutions
               (id, issue_id, title, description, method, status,
                resolved_at, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                 title=excluded.title,
                 description=excluded.description,
                 method=excluded.method,
                 status=excluded.status,
                 resolved_at=excluded.resolved_at,
                 updated_at=excluded.updated_at
            """,
            (
                res.id, res.issue_id, res.title, res.description,
                res.method.value, res.status.value,
                res.resolved_at, res.created_at, now,
            ),
        )
        await self._conn.commit()

    async def get_resolution(
        self, resolution_id: str, review_threshold: int = REVIEW_THRESHOLD
    ) -> Resolution | None:
        """Load a resolution with its steps and stored feedback merged in.

        ``needs_review`` is re-derived from the merged feedback so a stale
        step row never disagrees with the feedback table.
        """
        cursor = await self._conn.execute(
            "SELECT * FROM resolutions WHERE id = ?", (resolution_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        res = self._row_to_resolution(row)
        res.steps = await self.get_steps(resolution_id)
        feedback = await self.list_feedback(resolution_id)
        for step in res.steps:
            step.feedback = feedback.get(step.id)
            step.refresh_needs_review(review_threshold)
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM activity_log WHERE resolution_id = ?",
            (resolution_id,),
        )
        res.action_count = (await cursor.fetchone())[0]
        return res

    async def list_resolutions(self) -> list[Resolution]:
        cursor = await self._conn.execute(
            "SELECT * FROM resolutions ORDER BY created_at"
        )
        rows = await cursor.fetchall()
        return [self._row_to_resolution(r) for r in rows]

    # ---------------------------------------------------------------
    # Step CRUD
    # ---------------------------------------------------------------

    async def upsert_step(self, resolution_id: str, step: Step) -> None:
        await self._conn.execute(
            """INSERT INTO steps
               (id, resolution_id, idx, label, status, type, message,
                timestamp, duration_ms, input_text, output_text,
                confidence, needs_review, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
               ON CONFLICT(resolution_id, id) DO UPDATE SET
                 label=excluded.label,
                 status=excluded.status,
                 type=excluded.type,
                 message=excluded.message,
                 timestamp=excluded.timestamp,
                 duration_ms=excluded.duration_ms,
                 input_text=excluded.input_text,
                 output_text=excluded.output_text,
                 confidence=excluded.confidence,
                 needs_review=excluded.needs_review,
                 updated_at=excluded.updated_at
            """,
            (
                step.id, resolution_id, step.index, step.label,
                step.status.value, step.type.value, step.message,
                step.timestamp, step.duration_ms, step.input_text,
                step.output_text, step.confidence, int(step.needs_review),
                now_iso(),
            ),
        )
        await self._conn.commit()

    async def get_steps(self, resolution_id: str) -> list[Step]:
        cursor = await self._conn.execute(
            "SELECT * FROM steps WHERE resolution_id = ? ORDER BY idx",
            (resolution_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_step(r) for r in rows]

    # ---------------------------------------------------------------
    # Activity log
    # ---------------------------------------------------------------

    async def append_log_entry(self, resolution_id: str, entry: ActivityLogEntry) -> None:
        await self._conn.execute(
            """INSERT INTO activity_log
               (resolution_id, id, idx, label, status, type, message,
                timestamp, duration_ms, step_id)
               VALUES (?,?,?,?,?,?,?,?,?,?)""",
            (
                resolution_id, entry.id, entry.index, entry.label,
                entry.status.value, entry.type.value, entry.message,
                entry.timestamp, entry.duration_ms, entry.step_id,
            ),
        )
        await self._conn.commit()

    async def get_log_entries(self, resolution_id: str) -> list[ActivityLogEntry]:
        cursor = await self._conn.execute(
            "SELECT * FROM activity_log WHERE resolution_id = ? ORDER BY seq",
            (resolution_id,),
        )
        rows = await cursor.fetchall()
        return [
            ActivityLogEntry(
                id=r["id"],
                index=r["idx"],
                label=r["label"],
                status=StepStatus(r["status"]),
                type=StepType(r["type"]),
                message=r["message"] or "",
                timestamp=r["timestamp"],
                duration_ms=r["duration_ms"],
                step_id=r["step_id"],
            )
            for r in rows
        ]

    # ---------------------------------------------------------------
    # Feedback
    # ---------------------------------------------------------------

    async def save_feedback(
        self, resolution_id: str, step_id: str, feedback: Feedback
    ) -> None:
        await self._conn.execute(
            """INSERT INTO feedback (resolution_id, step_id, payload, submitted_at)
               VALUES (?,?,?,?)
               ON CONFLICT(resolution_id, step_id) DO UPDATE SET
                 payload=excluded.payload,
                 submitted_at=excluded.submitted_at
            """,
            (
                resolution_id, step_id,
                json.dumps(feedback.to_dict()), feedback.submitted_at,
            ),
        )
        await self._conn.commit()

    async def get_feedback(self, resolution_id: str, step_id: str) -> Feedback | None:
        cursor = await self._conn.execute(
            "SELECT payload FROM feedback WHERE resolution_id = ? AND step_id = ?",
            (resolution_id, step_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Feedback.from_dict(json.loads(row["payload"]))

    async def list_feedback(self, resolution_id: str) -> dict[str, Feedback]:
        cursor = await self._conn.execute(
            "SELECT step_id, payload FROM feedback WHERE resolution_id = ? ORDER BY step_id",
            (resolution_id,),
        )
        rows = await cursor.fetchall()
        return {r["step_id"]: Feedback.from_dict(json.loads(r["payload"])) for r in rows}

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    @staticmethod
    def _row_to_resolution(row) -> Resolution:
        return Resolution(
            id=row["id"],
            issue_id=row["issue_id"],
            title=row["title"],
            description=row["description"] or "",
            method=ResolutionMethod(row["method"]),
            status=ResolutionStatus(row["status"]),
            resolved_at=row["resolved_at"] or "",
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_step(row) -> Step:
        return Step(
            id=row["id"],
            index=row["idx"],
            label=row["label"],
            status=StepStatus(row["status"]),
            type=StepType(row["type"]),
            message=row["message"] or "",
            timestamp=row["timestamp"] or "",
            duration_ms=row["duration_ms"],
            input_text=row["input_text"] or "",
            output_text=row["output_text"] or "",
            confidence=row["confidence"],
            needs_review=bool(row["needs_review"]),
        )
