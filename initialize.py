#!/usr/bin/env python3
"""
Novel Video Agent Environment Initialization Script

Detects the environment from the NVA_ENV variable and initializes:
- The environment's database with the full pipeline schema
- Blob storage, database and log directories
- Schema validation for every entity table

Usage:
    python initialize.py

Environment is determined by NVA_ENV variable in .env file or environment:
- NVA_ENV=alpha → config/global_alpha.yaml
- NVA_ENV=prod → config/global_prod.yaml
"""

import os
import sqlite3
import sys
from pathlib import Path

from novel_video_agent.utils.config_loader import load_env_file


# Columns every entity table must carry
COMMON_COLUMNS = {"id", "created_at", "updated_at", "lifecycle", "deleted_at"}

EXPECTED_COLUMNS = {
    "resources": {"user_id", "name", "ext", "file_size", "content_type",
                  "storage_key", "storage_type", "status", "error_message"},
    "novels": {"resource_id", "user_id", "title", "style", "narration_type", "status"},
    "chapters": {"novel_id", "user_id", "sequence", "title", "chapter_text",
                 "total_chars", "word_count", "line_count"},
    "narrations": {"chapter_id", "user_id", "version", "content", "status", "error_message"},
    "audios": {"narration_id", "chapter_id", "user_id", "scene_number", "shot_number",
               "storage_key", "resource_id", "duration_ms", "status", "error_message"},
    "subtitles": {"narration_id", "chapter_id", "user_id", "format", "storage_key",
                  "resource_id", "status", "error_message"},
    "images": {"chapter_id", "narration_id", "user_id", "scene_number", "shot_number",
               "version", "prompt", "storage_key", "resource_id", "status", "error_message"},
    "videos": {"chapter_id", "narration_id", "user_id", "video_type", "sequence", "version",
               "job_id", "inputs", "storage_key", "resource_id", "status", "error_message"},
    "characters": {"novel_id", "user_id", "name", "gender", "age_group", "description"},
}


def validate_database_schema(db_path: str) -> bool:
    """Check every entity table has its expected columns.

    Args:
        db_path: Path to SQLite database file.

    Returns:
        True if all tables are present and complete.
    """
    try:
        with sqlite3.connect(db_path) as conn:
            cursor = conn.cursor()

            for table, columns in EXPECTED_COLUMNS.items():
                cursor.execute(f"PRAGMA table_info({table})")
                present = {row[1] for row in cursor.fetchall()}
                missing = (columns | COMMON_COLUMNS) - present
                if missing:
                    print(f"❌ Missing columns in {table} table: {missing}")
                    return False
                print(f"✅ {table} table validated - {len(present)} columns present")

            # Check WAL mode
            cursor.execute("PRAGMA journal_mode")
            journal_mode = cursor.fetchone()[0]
            if journal_mode.upper() == 'WAL':
                print("✅ WAL mode enabled for concurrent access")
            else:
                print(f"⚠️  Journal mode is {journal_mode}, not WAL")

            return True

    except sqlite3.Error as e:
        print(f"❌ Schema validation failed: {e}")
        return False


def create_directories(config: dict) -> None:
    """Create all required directories based on configuration.

    Args:
        config: Configuration dictionary with paths.
    """
    directories = [
        Path(config['paths']['database']).parent,  # database/ directory
        Path(config['paths']['storage_root']),
        Path(config['paths']['logs']),
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)
        print(f"📁 Created directory: {directory}")


def main():
    """Main initialization function."""
    print("🚀 Novel Video Agent - Environment Initialization")
    print("=" * 50)

    # Load .env file first
    load_env_file()

    env = os.getenv('NVA_ENV')
    print(f"🔧 Environment: {env or 'not set'}")

    try:
        from novel_video_agent.utils.config_loader import load_global_config
        from novel_video_agent.db_manager import init_db

        print("📖 Loading configuration...")
        config = load_global_config()  # Uses NVA_ENV to load config/global_{env}.yaml

        db_path = config['paths']['database']

        print("\n📁 Creating directory structure...")
        create_directories(config)

        print(f"\n📊 Initializing database: {db_path}")
        init_db(db_path)

        print("\n🔍 Validating database schema...")
        if validate_database_schema(db_path):
            print("✅ Database schema validation passed")
        else:
            print("❌ Database schema validation failed")
            sys.exit(1)

        print("\n" + "=" * 50)
        print("✅ Novel Video Agent Environment Initialized Successfully!")
        print(f"   Environment: {env}")
        print(f"   Database: {db_path}")
        print(f"   Storage: {config['paths']['storage_root']}")
        print(f"   Config: config/global_{env}.yaml")

        print("\n🚀 Ready to run:")
        print("   nva upload path/to/novel.txt --user <user-id>")

    except ImportError as e:
        print(f"❌ Import error: {e}")
        print("💡 Make sure you've installed the package: uv pip install -e .")
        sys.exit(1)
    except ValueError as e:
        print(f"❌ Initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
