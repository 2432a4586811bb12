"""
Database schema initialization for TrackQ.

Contains the SQL schema, built-in taxonomy seeding and schema validation.
"""

from __future__ import annotations

import sqlite3

from trackq.observability.logging import get_logger
from trackq.storage.models import default_categories, default_roles

logger = get_logger(__name__)

REQUIRED_TABLES: tuple[str, ...] = (
    "work_categories",
    "project_roles",
    "projects",
    "activity_sessions",
    "ai_suggestions",
    "insight_feedback",
    "cached_categorizations",
    "comprehensive_analyses",
)

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS work_categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        slug TEXT UNIQUE NOT NULL,
        icon TEXT,
        color TEXT,
        description TEXT,
        is_built_in INTEGER DEFAULT 0,
        is_active INTEGER DEFAULT 1,
        sort_order INTEGER DEFAULT 0,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS project_roles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        color TEXT,
        icon TEXT,
        is_default INTEGER DEFAULT 0,
        is_user_defined INTEGER DEFAULT 1,
        is_active INTEGER DEFAULT 1,
        sort_order INTEGER DEFAULT 0,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS projects (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        role_id INTEGER REFERENCES project_roles(id) ON DELETE SET NULL,
        default_category_id INTEGER REFERENCES work_categories(id) ON DELETE SET NULL,
        patterns TEXT NOT NULL DEFAULT '[]',
        sources TEXT NOT NULL DEFAULT '[]',
        is_active INTEGER DEFAULT 1,
        is_ai_suggested INTEGER DEFAULT 0,
        is_user_confirmed INTEGER DEFAULT 0,
        confidence REAL DEFAULT 0,
        total_duration REAL DEFAULT 0,
        last_seen TEXT,
        created_at TEXT NOT NULL,
        notes TEXT
    );

    CREATE TABLE IF NOT EXISTS activity_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        start_time TEXT NOT NULL,
        end_time TEXT,
        duration REAL DEFAULT 0,
        app_name TEXT,
        window_title TEXT,
        bundle_identifier TEXT,
        summary TEXT,
        key_insights TEXT NOT NULL DEFAULT '[]',
        work_type TEXT,
        project_name TEXT,
        category_id INTEGER REFERENCES work_categories(id) ON DELETE SET NULL,
        project_id INTEGER REFERENCES projects(id) ON DELETE SET NULL,
        ai_confidence REAL,
        is_ai_categorized INTEGER DEFAULT 0,
        concurrent_context_ids TEXT NOT NULL DEFAULT '[]',
        is_active INTEGER DEFAULT 1,
        screenshot_count INTEGER DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS ai_suggestions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL REFERENCES activity_sessions(id) ON DELETE CASCADE,
        suggestion_type TEXT NOT NULL
            CHECK (suggestion_type IN ('project', 'category', 'role', 'new_project')),
        suggested_value TEXT NOT NULL,
        confidence REAL NOT NULL,
        reasoning TEXT,
        context TEXT,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'accepted', 'rejected', 'modified')),
        user_modified_value TEXT,
        created_at TEXT NOT NULL,
        resolved_at TEXT
    );

    CREATE TABLE IF NOT EXISTS insight_feedback (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        insight_type TEXT NOT NULL,
        insight_text TEXT NOT NULL,
        action TEXT NOT NULL
            CHECK (action IN ('applied', 'dismissed', 'modified', 'deferred')),
        target_type TEXT NOT NULL
            CHECK (target_type IN ('project', 'category', 'role', 'session', 'global')),
        target_id INTEGER,
        target_name TEXT,
        changes TEXT,
        confidence REAL DEFAULT 0,
        created_at TEXT NOT NULL,
        applied_at TEXT
    );

    CREATE TABLE IF NOT EXISTS cached_categorizations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        app_name TEXT NOT NULL,
        window_title TEXT,
        project_name TEXT NOT NULL,
        project_role TEXT NOT NULL,
        work_category TEXT NOT NULL,
        patterns TEXT NOT NULL DEFAULT '[]',
        confidence REAL NOT NULL,
        timestamp TEXT NOT NULL,
        use_count INTEGER DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS comprehensive_analyses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        date TEXT NOT NULL,
        period TEXT NOT NULL
            CHECK (period IN ('today', 'yesterday', 'last_7_days', 'last_30_days', 'custom')),
        overview TEXT NOT NULL,
        work_segments TEXT NOT NULL DEFAULT '[]',
        timeline_segments TEXT NOT NULL DEFAULT '[]',
        context_analysis TEXT NOT NULL DEFAULT '',
        key_insights TEXT NOT NULL DEFAULT '[]',
        recommendations TEXT NOT NULL DEFAULT '[]',
        total_time REAL NOT NULL DEFAULT 0,
        session_count INTEGER NOT NULL DEFAULT 0,
        analysis_timestamp TEXT NOT NULL,
        follow_up_exchanges TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_start ON activity_sessions(start_time DESC);
    CREATE INDEX IF NOT EXISTS idx_sessions_project ON activity_sessions(project_id);
    CREATE INDEX IF NOT EXISTS idx_sessions_category ON activity_sessions(category_id);
    CREATE INDEX IF NOT EXISTS idx_suggestions_status ON ai_suggestions(status, created_at DESC);
    CREATE INDEX IF NOT EXISTS idx_suggestions_session ON ai_suggestions(session_id);
    CREATE INDEX IF NOT EXISTS idx_feedback_created ON insight_feedback(created_at DESC);
    CREATE INDEX IF NOT EXISTS idx_cache_app_title ON cached_categorizations(app_name, window_title);
    CREATE INDEX IF NOT EXISTS idx_cache_timestamp ON cached_categorizations(timestamp);
    CREATE INDEX IF NOT EXISTS idx_projects_last_seen ON projects(last_seen DESC);
    CREATE INDEX IF NOT EXISTS idx_analyses_date_period ON comprehensive_analyses(date, period);
    CREATE INDEX IF NOT EXISTS idx_analyses_timestamp ON comprehensive_analyses(analysis_timestamp DESC);
"""


def init_schema(conn: sqlite3.Connection) -> None:
    """
    Create tables and seed the built-in taxonomy (idempotent)

    Side Effects:
        - Creates tables and indexes if they don't exist
        - Inserts built-in categories when work_categories is empty
        - Inserts default roles when project_roles is empty
    """
    for statement in SCHEMA_SQL.split(";"):
        if statement.strip():
            conn.execute(statement)
    seed_defaults(conn)


def seed_defaults(conn: sqlite3.Connection) -> dict[str, int]:
    """Seed built-in categories and roles into empty tables; returns rows inserted."""
    inserted = {"categories": 0, "roles": 0}

    if conn.execute("SELECT COUNT(*) FROM work_categories").fetchone()[0] == 0:
        for category in default_categories():
            row = category.to_db_dict()
            row.pop("id")
            conn.execute(
                """
                INSERT INTO work_categories (
                    name, slug, icon, color, description,
                    is_built_in, is_active, sort_order, created_at
                ) VALUES (
                    :name, :slug, :icon, :color, :description,
                    :is_built_in, :is_active, :sort_order, :created_at
                )
                """,
                row,
            )
            inserted["categories"] += 1

    if conn.execute("SELECT COUNT(*) FROM project_roles").fetchone()[0] == 0:
        for role in default_roles():
            row = role.to_db_dict()
            row.pop("id")
            conn.execute(
                """
                INSERT INTO project_roles (
                    name, description, color, icon, is_default,
                    is_user_defined, is_active, sort_order, created_at
                ) VALUES (
                    :name, :description, :color, :icon, :is_default,
                    :is_user_defined, :is_active, :sort_order, :created_at
                )
                """,
                row,
            )
            inserted["roles"] += 1

    if inserted["categories"] or inserted["roles"]:
        logger.info(
            "Seeded %d categories and %d roles", inserted["categories"], inserted["roles"]
        )
    return inserted


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected tables

    Raises:
        ValueError: If tables are missing
    """
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    existing = {row[0] for row in rows}
    missing = [table for table in REQUIRED_TABLES if table not in existing]
    if missing:
        raise ValueError(f"Missing tables: {', '.join(missing)}")
    return True
