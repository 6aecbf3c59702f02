"""Migration 003: Add approvals table.

Holds the operator decision for each approval job of a run.
"""

import sqlite3


def up(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE approvals (
            run_id TEXT NOT NULL,
            node_id TEXT NOT NULL,
            approved INTEGER NOT NULL,
            approver TEXT NOT NULL,
            comment TEXT,
            decided_at TEXT NOT NULL,
            PRIMARY KEY (run_id, node_id),
            FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
        )
    """)


def down(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS approvals")
