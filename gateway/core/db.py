"""
SQLite store for the command gateway.
Every public core operation runs inside transaction(); BEGIN IMMEDIATE takes the
write lock before the first read so check-then-debit sequences cannot interleave.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import get_db_path, ensure_db_directory

REQUIRED_TABLES = ['users', 'user_credits', 'rules', 'commands', 'votes', 'audit_logs']


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection in autocommit mode."""
    ensure_db_directory()
    conn = sqlite3.connect(get_db_path(), timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction() -> Generator[sqlite3.Connection, None, None]:
    """Run a unit of work atomically: commit on success, roll back on any error."""
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")


def init_db():
    """Initialize the database with required tables."""
    with get_db() as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT UNIQUE,
                role TEXT NOT NULL CHECK (role IN ('admin', 'member')),
                created_at INTEGER NOT NULL
            )
        ''')

        # One row per user, created lazily on the first credit-affecting event
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS user_credits (
                user_id INTEGER PRIMARY KEY REFERENCES users(id),
                balance INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern TEXT NOT NULL,
                action TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 0,
                cost INTEGER,
                enabled BOOLEAN NOT NULL DEFAULT TRUE,
                schedule_type TEXT NOT NULL DEFAULT 'always',
                time_windows TEXT,         -- JSON list of window objects
                cron_expression TEXT,
                schedule_timezone TEXT,
                escalation_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                escalation_delay_ms INTEGER,
                escalation_action TEXT,
                restricted_to_user_id INTEGER,
                restricted_to_role TEXT,
                voting_threshold INTEGER,
                created_by INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER
            )
        ''')

        # matched_rule_id carries no foreign key: commands outlive the rule they matched
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS commands (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id),
                command_text TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('pending', 'needs_approval', 'executed', 'rejected')),
                matched_rule_id INTEGER,
                cost INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                executed_at INTEGER,
                rejection_reason TEXT,
                output TEXT,
                escalation_at INTEGER,
                escalated BOOLEAN NOT NULL DEFAULT FALSE,
                escalation_action TEXT,
                approver_id INTEGER,
                approved_at INTEGER,
                approval_reason TEXT,
                voting_threshold INTEGER
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS votes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                command_id INTEGER NOT NULL REFERENCES commands(id),
                user_id INTEGER NOT NULL REFERENCES users(id),
                vote_type TEXT NOT NULL CHECK (vote_type IN ('approve', 'reject')),
                created_at INTEGER NOT NULL,
                UNIQUE (command_id, user_id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER,
                command_id INTEGER,
                event_type TEXT NOT NULL,
                details TEXT,             -- JSON map
                created_at INTEGER NOT NULL
            )
        ''')

        # Create indexes for performance
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_commands_user_status ON commands(user_id, status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_commands_status_escalation ON commands(status, escalation_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_rules_enabled_priority ON rules(enabled, priority DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_event_ts ON audit_logs(event_type, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_user_ts ON audit_logs(user_id, created_at DESC)')


def health_check():
    """Check database health."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
