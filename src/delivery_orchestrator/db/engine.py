"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    objectives TEXT DEFAULT '',
    status TEXT DEFAULT 'PLANNING'
        CHECK (status IN ('PLANNING', 'IN_PROGRESS', 'COMPLETED', 'ON_HOLD')),
    current_role TEXT DEFAULT 'TRIAGE'
        CHECK (current_role IN ('TRIAGE', 'PLANNING', 'DEVELOPMENT', 'QA', 'ORCHESTRATOR')),
    knowledge_base TEXT DEFAULT '{}',
    wp_counter INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS work_packages (
    id TEXT PRIMARY KEY,
    wp_id TEXT NOT NULL,
    project_id TEXT NOT NULL REFERENCES projects(id),
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    priority INTEGER DEFAULT 1,
    status TEXT DEFAULT 'PLANNED'
        CHECK (status IN ('PLANNED', 'IN_PROGRESS', 'READY_FOR_QA',
                          'QA_IN_PROGRESS', 'COMPLETED', 'FAILED')),
    progress REAL DEFAULT 0 CHECK (progress >= 0 AND progress <= 100),
    dependencies TEXT DEFAULT '[]',
    task_counter INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE (project_id, wp_id)
);

CREATE INDEX IF NOT EXISTS idx_work_packages_project
    ON work_packages (project_id, status);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    work_package_id TEXT NOT NULL REFERENCES work_packages(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    file_path TEXT,
    changes TEXT,
    success_criteria TEXT,
    qa_results TEXT,
    status TEXT DEFAULT 'PLANNED'
        CHECK (status IN ('PLANNED', 'IN_PROGRESS', 'READY_FOR_QA',
                          'QA_IN_PROGRESS', 'COMPLETED', 'FAILED')),
    dependencies TEXT DEFAULT '[]',
    priority INTEGER DEFAULT 1,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE (project_id, task_id)
);

CREATE INDEX IF NOT EXISTS idx_tasks_work_package
    ON tasks (work_package_id, status);
CREATE INDEX IF NOT EXISTS idx_tasks_project
    ON tasks (project_id, status);

CREATE TABLE IF NOT EXISTS project_states (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    seq INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    checkpoint INTEGER DEFAULT 0,
    state TEXT NOT NULL,
    UNIQUE (project_id, seq)
);

CREATE INDEX IF NOT EXISTS idx_project_states_checkpoint
    ON project_states (project_id, checkpoint, seq);

CREATE TABLE IF NOT EXISTS state_heads (
    project_id TEXT PRIMARY KEY REFERENCES projects(id),
    head_id TEXT NOT NULL REFERENCES project_states(id),
    checkpoint_id TEXT REFERENCES project_states(id),
    seq INTEGER NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS file_registry (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    file_path TEXT NOT NULL,
    current_state TEXT DEFAULT '{}',
    modification_history TEXT DEFAULT '[]',
    last_modified_by TEXT REFERENCES tasks(id),
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE (project_id, file_path)
);

CREATE TRIGGER IF NOT EXISTS project_states_no_update
BEFORE UPDATE ON project_states BEGIN
    SELECT RAISE(ABORT, 'project_states is append-only');
END;

CREATE TRIGGER IF NOT EXISTS project_states_no_delete
BEFORE DELETE ON project_states BEGIN
    SELECT RAISE(ABORT, 'project_states is append-only');
END;
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db: sqlite3.Connection):
    """Run the block as one write transaction.

    Nested use joins the enclosing transaction, so composite operations commit
    or roll back as a unit.
    """
    if db.in_transaction:
        yield db
        return
    db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        db.rollback()
        raise
    else:
        db.commit()
