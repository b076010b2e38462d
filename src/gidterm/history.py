"""Persistent run history backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, event, func
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from gidterm.core.models import RunRecord, utc_now
from gidterm.semantic.state import SemanticState

logger = logging.getLogger(__name__)


class HistorySession(SQLModel, table=True):
    __tablename__ = "gidterm_sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    project: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class HistoryRun(SQLModel, table=True):
    __tablename__ = "gidterm_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_gidterm_runs_task_started", "task_id", "started_at"),)

    run_id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("gidterm_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str = Field(index=True)
    attempt: int
    status: str = Field(index=True)
    failure_reason: str | None = None
    exit_code: int | None = None
    exit_signal: int | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    semantic_json: str = Field(sa_column=Column(Text, nullable=False))
    output_text: str = Field(default="", sa_column=Column(Text, nullable=False))
    output_truncated: bool = False
    error_summary: str | None = None


@dataclass(slots=True)
class StoredSession:
    session_id: str
    project: str
    started_at: datetime
    finished_at: datetime | None
    run_count: int


@dataclass(slots=True)
class StoredRun:
    """Run history row with the semantic snapshot decoded."""

    session_id: str
    task_id: str
    attempt: int
    status: str
    failure_reason: str | None
    exit_code: int | None
    exit_signal: int | None
    started_at: datetime
    finished_at: datetime
    semantic: SemanticState
    output: tuple[str, ...]
    output_truncated: bool
    error_summary: str | None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "task_id": self.task_id,
            "attempt": self.attempt,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "exit_code": self.exit_code,
            "exit_signal": self.exit_signal,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "semantic": self.semantic.to_dict(),
            "output_truncated": self.output_truncated,
            "error_summary": self.error_summary,
        }


class HistoryRepository:
    """Session and run persistence facade."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create history tables when they do not exist yet."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(
            self.engine,
            tables=[HistorySession.__table__, HistoryRun.__table__],  # type: ignore[attr-defined]
        )

    def start_session(self, project: str) -> str:
        session_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                HistorySession(session_id=session_id, project=project, started_at=utc_now()),
            )
            session.commit()
        logger.debug("History session %s started for %s", session_id, project)
        return session_id

    def finish_session(self, session_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(HistorySession, session_id)
            if row is None:
                raise KeyError(f"Unknown history session: {session_id}")
            row.finished_at = utc_now()
            session.add(row)
            session.commit()

    def save_run(self, session_id: str, record: RunRecord) -> None:
        """Persist one finished run attempt."""

        outcome = record.outcome
        with Session(self.engine) as session:
            session.add(
                HistoryRun(
                    session_id=session_id,
                    task_id=record.task_id,
                    attempt=record.attempt,
                    status=record.status.value,
                    failure_reason=record.failure_reason.value if record.failure_reason else None,
                    exit_code=outcome.exit_code if outcome is not None else None,
                    exit_signal=outcome.signal if outcome is not None else None,
                    started_at=record.started_at,
                    finished_at=record.finished_at,
                    semantic_json=json.dumps(record.semantic.to_dict(), ensure_ascii=False),
                    output_text="\n".join(record.output),
                    output_truncated=record.output_truncated,
                    error_summary=record.error_summary,
                ),
            )
            session.commit()

    def list_sessions(self, *, limit: int = 20) -> list[StoredSession]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(HistorySession)
                .order_by(col(HistorySession.started_at).desc())
                .limit(limit),
            ).all()
            counts: dict[str, int] = {}
            if rows:
                counts = {
                    session_id: int(count)
                    for session_id, count in session.exec(
                        select(HistoryRun.session_id, func.count())
                        .where(col(HistoryRun.session_id).in_([row.session_id for row in rows]))
                        .group_by(col(HistoryRun.session_id)),
                    ).all()
                }
            result = []
            for row in rows:
                result.append(
                    StoredSession(
                        session_id=row.session_id,
                        project=row.project,
                        started_at=_as_utc(row.started_at),
                        finished_at=_as_utc(row.finished_at) if row.finished_at else None,
                        run_count=counts.get(row.session_id, 0),
                    ),
                )
            return result

    def list_runs(
        self,
        *,
        session_id: str | None = None,
        task_id: str | None = None,
        limit: int = 50,
    ) -> list[StoredRun]:
        """Most recent runs first, optionally filtered by session or task."""

        with Session(self.engine) as session:
            statement = select(HistoryRun)
            if session_id is not None:
                statement = statement.where(HistoryRun.session_id == session_id)
            if task_id is not None:
                statement = statement.where(HistoryRun.task_id == task_id)
            rows = session.exec(
                statement.order_by(
                    col(HistoryRun.started_at).desc(),
                    col(HistoryRun.run_id).desc(),
                ).limit(limit),
            ).all()
            return [_to_stored_run(row) for row in rows]


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with WAL and busy-timeout pragmas."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on read.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _to_stored_run(row: HistoryRun) -> StoredRun:
    return StoredRun(
        session_id=row.session_id,
        task_id=row.task_id,
        attempt=row.attempt,
        status=row.status,
        failure_reason=row.failure_reason,
        exit_code=row.exit_code,
        exit_signal=row.exit_signal,
        started_at=_as_utc(row.started_at),
        finished_at=_as_utc(row.finished_at),
        semantic=SemanticState.from_dict(json.loads(row.semantic_json)),
        output=tuple(row.output_text.split("\n")) if row.output_text else (),
        output_truncated=row.output_truncated,
        error_summary=row.error_summary,
    )
