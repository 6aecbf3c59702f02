"""Migration 001: Initial schema.

Creates the runs table.
"""

import sqlite3


def up(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS runs (
            id TEXT PRIMARY KEY,
            pipeline TEXT NOT NULL,
            definition_path TEXT,
            trigger TEXT NOT NULL DEFAULT '{}',
            outcome TEXT NOT NULL,
            canceled INTEGER NOT NULL DEFAULT 0,
            retry_of TEXT,
            plan TEXT NOT NULL DEFAULT '{}',
            variables TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            run_dir TEXT NOT NULL,
            logs_dir TEXT NOT NULL,
            audit_dir TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_runs_outcome
        ON runs(outcome)
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_runs_created_at
        ON runs(created_at)
    """)


def down(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS runs")
