"""Durable store: projects, stage results and generated prompts.

Stage results are keyed by (project id, stage type): inserting a result for a
key replaces the live row for that key. Every write is committed before the
call returns, so an external reader always sees the latest status
transition. No multi-row transactions are assumed.
"""

import dataclasses
import json
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from aps.state import Project, ProjectStatus, StageResult

_STAGE_FIELDS = {f.name for f in dataclasses.fields(StageResult)} - {"id", "project_id", "stage_type"}


class Store(Protocol):
    def insert_project(
        self,
        name: str,
        description: str,
        competitor_links: list[str] | None = None,
        competitor_reviews: list[str] | None = None,
    ) -> Project: ...

    def get_project(self, project_id: str) -> Project | None: ...

    def update_project_status(self, project_id: str, status: ProjectStatus) -> None: ...

    def insert_stage_result(self, result: StageResult) -> StageResult: ...

    def update_stage_result(self, result_id: str, **fields: Any) -> StageResult: ...

    def list_stage_results(self, project_id: str) -> list[StageResult]: ...

    def insert_prompt(self, project_id: str, tool: str, title: str, content: str, order: int) -> dict: ...

    def delete_prompts(self, project_id: str) -> None: ...

    def list_prompts(self, project_id: str) -> list[dict]: ...


def _new_id() -> str:
    return str(uuid.uuid4())


def _check_fields(fields: dict) -> None:
    unknown = set(fields) - _STAGE_FIELDS
    if unknown:
        raise ValueError(f"Unknown stage result fields: {sorted(unknown)}")


class InMemoryStore:
    """Dict-backed store for tests and dry runs. Returns copies, never live rows."""

    def __init__(self) -> None:
        self.projects: dict[str, Project] = {}
        self.stage_results: dict[str, StageResult] = {}
        self.prompts: list[dict] = []
        self.status_log: list[tuple[str, str]] = []  # (stage_type, status) per write

    def insert_project(self, name, description, competitor_links=None, competitor_reviews=None) -> Project:
        project: Project = {
            "id": _new_id(),
            "name": name,
            "description": description,
            "competitor_links": list(competitor_links or []),
            "competitor_reviews": list(competitor_reviews or []),
            "status": "draft",
        }
        self.projects[project["id"]] = project
        return dict(project)

    def get_project(self, project_id: str) -> Project | None:
        project = self.projects.get(project_id)
        return dict(project) if project else None

    def update_project_status(self, project_id: str, status: ProjectStatus) -> None:
        self.projects[project_id]["status"] = status

    def insert_stage_result(self, result: StageResult) -> StageResult:
        for rid, existing in list(self.stage_results.items()):
            if existing.project_id == result.project_id and existing.stage_type == result.stage_type:
                del self.stage_results[rid]
        stored = dataclasses.replace(result, id=_new_id())
        self.stage_results[stored.id] = stored
        self.status_log.append((stored.stage_type, stored.status))
        return dataclasses.replace(stored)

    def update_stage_result(self, result_id: str, **fields: Any) -> StageResult:
        _check_fields(fields)
        stored = dataclasses.replace(self.stage_results[result_id], **fields)
        self.stage_results[result_id] = stored
        if "status" in fields:
            self.status_log.append((stored.stage_type, stored.status))
        return dataclasses.replace(stored)

    def list_stage_results(self, project_id: str) -> list[StageResult]:
        return [dataclasses.replace(r) for r in self.stage_results.values() if r.project_id == project_id]

    def insert_prompt(self, project_id, tool, title, content, order) -> dict:
        row = {
            "id": _new_id(),
            "project_id": project_id,
            "tool": tool,
            "title": title,
            "content": content,
            "order": order,
        }
        self.prompts.append(row)
        return dict(row)

    def delete_prompts(self, project_id: str) -> None:
        self.prompts = [p for p in self.prompts if p["project_id"] != project_id]

    def list_prompts(self, project_id: str) -> list[dict]:
        rows = [dict(p) for p in self.prompts if p["project_id"] == project_id]
        return sorted(rows, key=lambda p: (p["tool"], p["order"]))


_CREATE_PROJECTS_TABLE = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL,
    competitor_links TEXT NOT NULL DEFAULT '[]',
    competitor_reviews TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'draft'
);
"""

_CREATE_STAGE_RESULTS_TABLE = """
CREATE TABLE IF NOT EXISTS stage_results (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    stage_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    output TEXT,
    model_used TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    UNIQUE (project_id, stage_type)
);
"""

_CREATE_PROMPTS_TABLE = """
CREATE TABLE IF NOT EXISTS prompts (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    tool TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    "order" INTEGER NOT NULL DEFAULT 0
);
"""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _to_row(fields: dict) -> dict:
    row = dict(fields)
    if "output" in row:
        row["output"] = json.dumps(row["output"]) if row["output"] is not None else None
    for key in ("created_at", "completed_at"):
        if key in row:
            row[key] = _iso(row[key])
    return row


def _from_row(row: sqlite3.Row) -> StageResult:
    return StageResult(
        id=row["id"],
        project_id=row["project_id"],
        stage_type=row["stage_type"],
        status=row["status"],
        output=json.loads(row["output"]) if row["output"] is not None else None,
        model_used=row["model_used"],
        attempts=row["attempts"],
        created_at=datetime.fromisoformat(row["created_at"]),
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
    )


def _project_from_row(row: sqlite3.Row) -> Project:
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "competitor_links": json.loads(row["competitor_links"]),
        "competitor_reviews": json.loads(row["competitor_reviews"]),
        "status": row["status"],
    }


class SQLiteStore:
    """SQLite-backed store. One connection, autocommitted per write.

    Calls are synchronous. The orchestrator awaits one stage at a time, so no
    write overlaps a generation call.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            self._conn = conn
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def initialize(self) -> "SQLiteStore":
        """Create tables if they don't exist. Safe to call multiple times."""
        with self._transaction() as cursor:
            cursor.execute(_CREATE_PROJECTS_TABLE)
            cursor.execute(_CREATE_STAGE_RESULTS_TABLE)
            cursor.execute(_CREATE_PROMPTS_TABLE)
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def insert_project(self, name, description, competitor_links=None, competitor_reviews=None) -> Project:
        project_id = _new_id()
        with self._transaction() as cursor:
            cursor.execute(
                "INSERT INTO projects (id, name, description, competitor_links, competitor_reviews, status) "
                "VALUES (?, ?, ?, ?, ?, 'draft');",
                (
                    project_id,
                    name,
                    description,
                    json.dumps(list(competitor_links or [])),
                    json.dumps(list(competitor_reviews or [])),
                ),
            )
        return self.get_project(project_id)

    def get_project(self, project_id: str) -> Project | None:
        row = self._get_connection().execute("SELECT * FROM projects WHERE id = ?;", (project_id,)).fetchone()
        return _project_from_row(row) if row else None

    def update_project_status(self, project_id: str, status: ProjectStatus) -> None:
        with self._transaction() as cursor:
            cursor.execute("UPDATE projects SET status = ? WHERE id = ?;", (status, project_id))

    def insert_stage_result(self, result: StageResult) -> StageResult:
        stored = dataclasses.replace(result, id=_new_id())
        row = _to_row(dataclasses.asdict(stored))
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM stage_results WHERE project_id = ? AND stage_type = ?;",
                (stored.project_id, stored.stage_type),
            )
            cursor.execute(
                "INSERT INTO stage_results (id, project_id, stage_type, status, output, model_used, "
                "attempts, created_at, completed_at) VALUES (:id, :project_id, :stage_type, :status, "
                ":output, :model_used, :attempts, :created_at, :completed_at);",
                row,
            )
        return stored

    def update_stage_result(self, result_id: str, **fields: Any) -> StageResult:
        _check_fields(fields)
        if fields:
            row = _to_row(fields)
            assignments = ", ".join(f"{key} = :{key}" for key in row)
            with self._transaction() as cursor:
                cursor.execute(f"UPDATE stage_results SET {assignments} WHERE id = :id;", {**row, "id": result_id})
        found = self._get_connection().execute("SELECT * FROM stage_results WHERE id = ?;", (result_id,)).fetchone()
        return _from_row(found)

    def list_stage_results(self, project_id: str) -> list[StageResult]:
        rows = self._get_connection().execute(
            "SELECT * FROM stage_results WHERE project_id = ? ORDER BY created_at;", (project_id,)
        ).fetchall()
        return [_from_row(r) for r in rows]

    def insert_prompt(self, project_id, tool, title, content, order) -> dict:
        row = {"id": _new_id(), "project_id": project_id, "tool": tool, "title": title, "content": content, "order": order}
        with self._transaction() as cursor:
            cursor.execute(
                'INSERT INTO prompts (id, project_id, tool, title, content, "order") '
                "VALUES (:id, :project_id, :tool, :title, :content, :order);",
                row,
            )
        return row

    def delete_prompts(self, project_id: str) -> None:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM prompts WHERE project_id = ?;", (project_id,))

    def list_prompts(self, project_id: str) -> list[dict]:
        rows = self._get_connection().execute(
            'SELECT * FROM prompts WHERE project_id = ? ORDER BY tool, "order";', (project_id,)
        ).fetchall()
        return [dict(r) for r in rows]


def open_store(db_path: Path | str | None = None) -> SQLiteStore:
    """Open (and initialize) the SQLite store at db_path, or the configured path."""
    from aps.config import get_config, project_root

    path = Path(db_path) if db_path else project_root() / get_config()["db_path"]
    return SQLiteStore(path).initialize()
