"""
Tests for database manager module.
"""

import sqlite3
from pathlib import Path

import pytest

from novel_video_agent.db_manager import ENTITY_TABLES, get_db_connection, init_db


class TestInitDb:
    """Tests for init_db function."""

    def test_creates_tables_and_indices(self, tmp_path: Path) -> None:
        """Test that database schema is created correctly."""
        # Arrange
        db_path = str(tmp_path / "test.db")

        # Act
        init_db(db_path)

        # Assert
        conn = sqlite3.connect(db_path)
        cursor = conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}
        assert set(ENTITY_TABLES).issubset(tables)

        cursor.execute("SELECT name FROM sqlite_master WHERE type='index'")
        indices = {row[0] for row in cursor.fetchall()}
        assert "idx_narrations_active_chapter" in indices
        assert "idx_images_unit_version" in indices

        cursor.execute("PRAGMA table_info(chapters)")
        columns = {row[1] for row in cursor.fetchall()}
        assert {"lifecycle", "deleted_at", "created_at", "updated_at"}.issubset(columns)
        conn.close()

    def test_idempotent_multiple_calls(self, tmp_path: Path) -> None:
        """Test that init_db can be called multiple times safely."""
        # Arrange
        db_path = str(tmp_path / "test.db")

        # Act
        init_db(db_path)
        init_db(db_path)

        # Assert
        conn = sqlite3.connect(db_path)
        assert conn.execute("SELECT COUNT(*) FROM chapters").fetchone()[0] == 0
        conn.close()

    def test_lifecycle_check_constraint(self, tmp_path: Path) -> None:
        """Test that lifecycle only accepts active or tombstoned."""
        # Arrange
        db_path = str(tmp_path / "test.db")
        init_db(db_path)

        # Act / Assert
        with pytest.raises(sqlite3.IntegrityError):
            with get_db_connection(db_path) as conn:
                conn.execute(
                    "INSERT INTO resources (id, user_id, name, content_type, storage_key, storage_type, "
                    "created_at, updated_at, lifecycle) VALUES ('r1', 'u', 'n', 't', 'k', 'local', 'x', 'x', 'gone')"
                )


class TestGetDbConnection:
    """Tests for get_db_connection context manager."""

    def test_rolls_back_on_error(self, tmp_path: Path) -> None:
        """Test that an exception inside the block discards writes."""
        # Arrange
        db_path = str(tmp_path / "test.db")
        init_db(db_path)

        # Act
        with pytest.raises(RuntimeError):
            with get_db_connection(db_path) as conn:
                conn.execute(
                    "INSERT INTO resources (id, user_id, name, content_type, storage_key, storage_type, "
                    "created_at, updated_at) VALUES ('r1', 'u', 'n', 't', 'k', 'local', 'x', 'x')"
                )
                raise RuntimeError("boom")

        # Assert
        with get_db_connection(db_path) as conn:
            assert conn.execute("SELECT COUNT(*) FROM resources").fetchone()[0] == 0

    def test_rows_support_column_access(self, tmp_path: Path) -> None:
        # Arrange
        db_path = str(tmp_path / "test.db")
        init_db(db_path)

        # Act
        with get_db_connection(db_path) as conn:
            row = conn.execute("SELECT 1 AS one").fetchone()

        # Assert
        assert row["one"] == 1
