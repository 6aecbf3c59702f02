"""Migration 002: Add run_nodes table.

One row per stage, job and step of a run, updated on every transition.
"""

import sqlite3


def up(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE run_nodes (
            run_id TEXT NOT NULL,
            node_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            name TEXT NOT NULL,
            parent_id TEXT,
            status TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            exit_code INTEGER,
            error_code TEXT,
            error_message TEXT,
            log_path TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            issues INTEGER NOT NULL DEFAULT 0,
            reused INTEGER NOT NULL DEFAULT 0,
            required INTEGER NOT NULL DEFAULT 1,
            PRIMARY KEY (run_id, node_id),
            FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE INDEX idx_run_nodes_run_id ON run_nodes(run_id)
    """)

    cursor.execute("""
        CREATE INDEX idx_run_nodes_status ON run_nodes(status)
    """)


def down(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS run_nodes")
