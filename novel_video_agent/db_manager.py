"""
Database manager for the novel video agent.

Handles SQLite connection handling and schema creation for every
pipeline entity. Record-level operations live in store.py.
"""

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime


ENTITY_TABLES = (
    "resources", "novels", "chapters", "narrations",
    "audios", "subtitles", "images", "videos", "characters",
)

# Columns shared by every entity table
_COMMON_COLUMNS = """
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    lifecycle TEXT NOT NULL DEFAULT 'active' CHECK (lifecycle IN ('active', 'tombstoned')),
    deleted_at TEXT
"""

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS resources (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    ext TEXT NOT NULL DEFAULT '',
    file_size INTEGER NOT NULL DEFAULT 0,
    content_type TEXT NOT NULL,
    storage_key TEXT NOT NULL,
    storage_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'ready', 'failed')),
    error_message TEXT,
    {_COMMON_COLUMNS}
);

CREATE TABLE IF NOT EXISTS novels (
    id TEXT PRIMARY KEY,
    resource_id TEXT NOT NULL REFERENCES resources(id),
    user_id TEXT NOT NULL,
    title TEXT,
    style TEXT NOT NULL,
    narration_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'created' CHECK (status IN ('created', 'chaptered')),
    {_COMMON_COLUMNS}
);

CREATE TABLE IF NOT EXISTS chapters (
    id TEXT PRIMARY KEY,
    novel_id TEXT NOT NULL REFERENCES novels(id),
    user_id TEXT NOT NULL,
    sequence INTEGER NOT NULL CHECK (sequence >= 1),
    title TEXT NOT NULL,
    chapter_text TEXT NOT NULL,
    total_chars INTEGER NOT NULL DEFAULT 0,
    word_count INTEGER NOT NULL DEFAULT 0,
    line_count INTEGER NOT NULL DEFAULT 0,
    {_COMMON_COLUMNS}
);

CREATE TABLE IF NOT EXISTS narrations (
    id TEXT PRIMARY KEY,
    chapter_id TEXT NOT NULL REFERENCES chapters(id),
    user_id TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    content TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'completed', 'failed')),
    error_message TEXT,
    {_COMMON_COLUMNS}
);

CREATE TABLE IF NOT EXISTS audios (
    id TEXT PRIMARY KEY,
    narration_id TEXT NOT NULL REFERENCES narrations(id),
    chapter_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    scene_number INTEGER NOT NULL,
    shot_number INTEGER NOT NULL,
    storage_key TEXT,
    resource_id TEXT,
    duration_ms INTEGER,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'completed', 'failed')),
    error_message TEXT,
    {_COMMON_COLUMNS}
);

CREATE TABLE IF NOT EXISTS subtitles (
    id TEXT PRIMARY KEY,
    narration_id TEXT NOT NULL REFERENCES narrations(id),
    chapter_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    format TEXT NOT NULL DEFAULT 'srt',
    storage_key TEXT,
    resource_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'completed', 'failed')),
    error_message TEXT,
    {_COMMON_COLUMNS}
);

CREATE TABLE IF NOT EXISTS images (
    id TEXT PRIMARY KEY,
    chapter_id TEXT NOT NULL REFERENCES chapters(id),
    narration_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    scene_number INTEGER NOT NULL,
    shot_number INTEGER NOT NULL,
    version INTEGER NOT NULL CHECK (version >= 1),
    prompt TEXT,
    storage_key TEXT,
    resource_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'completed', 'failed')),
    error_message TEXT,
    {_COMMON_COLUMNS}
);

CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    chapter_id TEXT NOT NULL REFERENCES chapters(id),
    narration_id TEXT,
    user_id TEXT NOT NULL,
    video_type TEXT NOT NULL CHECK (video_type IN ('narration_video', 'final_video')),
    sequence INTEGER NOT NULL DEFAULT 1,
    version INTEGER NOT NULL DEFAULT 1,
    job_id TEXT,
    inputs TEXT,
    storage_key TEXT,
    resource_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    error_message TEXT,
    {_COMMON_COLUMNS}
);

CREATE TABLE IF NOT EXISTS characters (
    id TEXT PRIMARY KEY,
    novel_id TEXT NOT NULL REFERENCES novels(id),
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    gender TEXT,
    age_group TEXT,
    description TEXT,
    {_COMMON_COLUMNS}
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_chapters_active_sequence
    ON chapters(novel_id, sequence) WHERE lifecycle = 'active';
CREATE UNIQUE INDEX IF NOT EXISTS idx_narrations_active_chapter
    ON narrations(chapter_id) WHERE lifecycle = 'active';
CREATE UNIQUE INDEX IF NOT EXISTS idx_audios_active_unit
    ON audios(narration_id, scene_number, shot_number) WHERE lifecycle = 'active';
CREATE UNIQUE INDEX IF NOT EXISTS idx_subtitles_active_narration
    ON subtitles(narration_id) WHERE lifecycle = 'active';
CREATE UNIQUE INDEX IF NOT EXISTS idx_images_unit_version
    ON images(chapter_id, scene_number, shot_number, version);
CREATE UNIQUE INDEX IF NOT EXISTS idx_videos_active_sequence
    ON videos(chapter_id, video_type, sequence) WHERE lifecycle = 'active';
CREATE UNIQUE INDEX IF NOT EXISTS idx_characters_active_name
    ON characters(novel_id, name) WHERE lifecycle = 'active';

CREATE INDEX IF NOT EXISTS idx_resources_user ON resources(user_id, lifecycle);
CREATE INDEX IF NOT EXISTS idx_novels_resource ON novels(resource_id);
CREATE INDEX IF NOT EXISTS idx_narrations_chapter ON narrations(chapter_id, version);
CREATE INDEX IF NOT EXISTS idx_images_chapter ON images(chapter_id, lifecycle);
CREATE INDEX IF NOT EXISTS idx_videos_chapter ON videos(chapter_id, video_type, lifecycle);
"""


def now_iso() -> str:
    """Current local time as an ISO-8601 string."""
    return datetime.now().isoformat()


def new_id() -> str:
    """Immutable identifier assigned at creation."""
    return uuid.uuid4().hex


def configure_wal_mode(db_path: str) -> None:
    """Configure database for concurrent access with WAL mode.

    Enables WAL (Write-Ahead Logging) mode for concurrent readers + single writer,
    which the shot-level thread pool relies on.

    Args:
        db_path: Path to SQLite database file.
    """
    with sqlite3.connect(db_path) as conn:
        # Enable WAL mode for concurrent readers + single writer
        conn.execute("PRAGMA journal_mode=WAL")
        # Increase cache size for better performance (10MB)
        conn.execute("PRAGMA cache_size=10000")
        # Set synchronous to NORMAL for better performance
        conn.execute("PRAGMA synchronous=NORMAL")
        # Set WAL checkpoint size
        conn.execute("PRAGMA wal_autocheckpoint=1000")
        conn.commit()


@contextmanager
def get_db_connection(db_path: str, immediate: bool = False):
    """Context manager for database connections.

    Ensures connections are properly closed and commits are handled.

    Args:
        db_path: Path to SQLite database file.
        immediate: Take the write lock up front with BEGIN IMMEDIATE so a
            read-then-insert sequence cannot interleave with another writer.

    Yields:
        Database connection object.
    """
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row  # Enable column access by name
    try:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    """Create every table and index if missing.

    Idempotent: safe to call on an existing database.

    Args:
        db_path: Path to SQLite database file.

    Examples:
        >>> init_db("database/novel_video_alpha.db")
    """
    with get_db_connection(db_path) as conn:
        conn.executescript(SCHEMA)
    configure_wal_mode(db_path)
