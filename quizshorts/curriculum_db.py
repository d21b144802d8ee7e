"""
Curriculum DB - SQLite storage for the class -> subject -> topic hierarchy.

Holds the curriculum (seeded from config/curriculum.json), the generated
quiz questions and video records, and the append-only topic_usage ledger
that the topic rotation scheduler reads its usage counts from.

Catalog order is insertion order: every query orders subjects and topics
by their ascending id so callers never depend on incidental row order.
"""

import json
import logging
import os
import sqlite3
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
CONFIG_DIR = Path(os.getenv("CONFIG_DIR", "./config"))
DB_FILENAME = "quiz_shorts.db"

logger = logging.getLogger(__name__)

VIDEO_STATUSES = ("generating", "generated", "uploaded", "failed")


class CurriculumStoreError(RuntimeError):
    """Raised when the curriculum database cannot be read or written."""


def get_db(db_path: Path = None) -> sqlite3.Connection:
    """Get or create the curriculum database with all tables."""
    db_path = Path(db_path) if db_path else DATA_DIR / DB_FILENAME
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")

    conn.execute("""
        CREATE TABLE IF NOT EXISTS classes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            description TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS subjects (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            class_id INTEGER NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(name, class_id),
            FOREIGN KEY (class_id) REFERENCES classes(id) ON DELETE CASCADE
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS topics (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            subject_id INTEGER NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(name, subject_id),
            FOREIGN KEY (subject_id) REFERENCES subjects(id) ON DELETE CASCADE
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS questions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            topic_id INTEGER NOT NULL,
            text TEXT NOT NULL,
            option_a TEXT NOT NULL,
            option_b TEXT NOT NULL,
            option_c TEXT NOT NULL,
            option_d TEXT NOT NULL,
            correct_answer TEXT NOT NULL,
            explanation TEXT,
            difficulty TEXT DEFAULT 'medium',
            video_id INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (topic_id) REFERENCES topics(id) ON DELETE CASCADE
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS videos (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            description TEXT,
            filename TEXT,
            status TEXT DEFAULT 'generating',
            class_id INTEGER NOT NULL,
            subject_id INTEGER NOT NULL,
            topic_id INTEGER NOT NULL,
            youtube_id TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Append-only: rows are never updated, and survive topic deletion so that
    # history formatting can skip them instead of losing the ledger.
    conn.execute("""
        CREATE TABLE IF NOT EXISTS topic_usage (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            class_id INTEGER NOT NULL,
            subject_id INTEGER NOT NULL,
            topic_id INTEGER NOT NULL,
            video_id INTEGER,
            used_at TIMESTAMP NOT NULL
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_topic_usage_class ON topic_usage (class_id, used_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_topic_usage_topic ON topic_usage (topic_id)"
    )

    conn.commit()
    return conn


class SQLiteCurriculumStore:
    """Curriculum store and usage ledger backed by a single SQLite file.

    Opens one connection per call, so an instance is safe to share between
    threads and concurrent producers. sqlite3.Error is re-raised as
    CurriculumStoreError.
    """

    def __init__(self, db_path: Path = None):
        self.db_path = Path(db_path) if db_path else DATA_DIR / DB_FILENAME

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_db(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise CurriculumStoreError(f"Cannot open curriculum database {self.db_path}: {e}") from e

    def _query(self, sql: str, params=()) -> list[dict]:
        db = self._connect()
        try:
            rows = db.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise CurriculumStoreError(f"Curriculum query failed: {e}") from e
        finally:
            db.close()
        return [dict(row) for row in rows]

    def _insert(self, sql: str, params) -> int:
        db = self._connect()
        try:
            cursor = db.execute(sql, params)
            db.commit()
            return cursor.lastrowid
        except sqlite3.Error as e:
            raise CurriculumStoreError(f"Curriculum write failed: {e}") from e
        finally:
            db.close()

    # ----- Curriculum reads -----

    def list_classes(self) -> list[dict]:
        return self._query("SELECT id, name, description FROM classes ORDER BY id")

    def get_class(self, class_id: int) -> dict | None:
        rows = self._query("SELECT id, name, description FROM classes WHERE id = ?", (class_id,))
        return rows[0] if rows else None

    def find_class_by_name(self, name: str) -> dict | None:
        rows = self._query("SELECT id, name, description FROM classes WHERE name = ?", (name,))
        return rows[0] if rows else None

    def get_subjects_with_topics_and_usage_counts(self, class_id: int) -> list[dict]:
        """
        Return the class's subjects in catalog order, each with its topics.

        Every topic carries usage_count (number of topic_usage rows) and
        last_used_at (newest used_at, or None). Subjects without topics are
        included with an empty topic list.
        """
        rows = self._query(
            """SELECT s.id AS subject_id, s.name AS subject_name,
                      t.id AS topic_id, t.name AS topic_name,
                      COUNT(u.id) AS usage_count,
                      MAX(u.used_at) AS last_used_at
               FROM subjects s
               LEFT JOIN topics t ON t.subject_id = s.id
               LEFT JOIN topic_usage u ON u.topic_id = t.id
               WHERE s.class_id = ?
               GROUP BY s.id, t.id
               ORDER BY s.id, t.id""",
            (class_id,),
        )

        subjects = []
        by_id = {}
        for row in rows:
            subject = by_id.get(row["subject_id"])
            if subject is None:
                subject = {
                    "subject_id": row["subject_id"],
                    "subject_name": row["subject_name"],
                    "topics": [],
                }
                by_id[row["subject_id"]] = subject
                subjects.append(subject)
            if row["topic_id"] is None:
                continue
            subject["topics"].append({
                "id": row["topic_id"],
                "name": row["topic_name"],
                "usage_count": row["usage_count"],
                "last_used_at": _parse_timestamp(row["last_used_at"]),
            })
        return subjects

    def get_topic(self, topic_id: int) -> dict | None:
        """Resolve a topic with its subject name, or None if either is gone."""
        rows = self._query(
            """SELECT t.id, t.name, t.subject_id, s.name AS subject_name
               FROM topics t JOIN subjects s ON s.id = t.subject_id
               WHERE t.id = ?""",
            (topic_id,),
        )
        return rows[0] if rows else None

    # ----- Usage ledger -----

    def append_usage(self, record: dict) -> int:
        used_at = record.get("used_at") or datetime.now()
        return self._insert(
            """INSERT INTO topic_usage (class_id, subject_id, topic_id, video_id, used_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                record["class_id"],
                record["subject_id"],
                record["topic_id"],
                record.get("video_id"),
                used_at.isoformat(),
            ),
        )

    def query_recent(self, class_id: int, limit: int) -> list[dict]:
        rows = self._query(
            """SELECT id, class_id, subject_id, topic_id, video_id, used_at
               FROM topic_usage WHERE class_id = ?
               ORDER BY used_at DESC, id DESC LIMIT ?""",
            (class_id, limit),
        )
        for row in rows:
            row["used_at"] = _parse_timestamp(row["used_at"])
        return rows

    # ----- Admin / CRUD -----

    def add_class(self, name: str, description: str = None) -> int:
        """Insert a class if missing and return its id."""
        self._insert(
            "INSERT OR IGNORE INTO classes (name, description) VALUES (?, ?)",
            (name, description),
        )
        return self.find_class_by_name(name)["id"]

    def add_subject(self, class_id: int, name: str) -> int:
        self._insert(
            "INSERT OR IGNORE INTO subjects (name, class_id) VALUES (?, ?)",
            (name, class_id),
        )
        rows = self._query(
            "SELECT id FROM subjects WHERE name = ? AND class_id = ?", (name, class_id)
        )
        return rows[0]["id"]

    def add_topic(self, subject_id: int, name: str) -> int:
        self._insert(
            "INSERT OR IGNORE INTO topics (name, subject_id) VALUES (?, ?)",
            (name, subject_id),
        )
        rows = self._query(
            "SELECT id FROM topics WHERE name = ? AND subject_id = ?", (name, subject_id)
        )
        return rows[0]["id"]

    def delete_topic(self, topic_id: int) -> None:
        db = self._connect()
        try:
            db.execute("DELETE FROM topics WHERE id = ?", (topic_id,))
            db.commit()
        except sqlite3.Error as e:
            raise CurriculumStoreError(f"Curriculum write failed: {e}") from e
        finally:
            db.close()

    def create_video(self, class_id: int, subject_id: int, topic_id: int,
                     title: str, description: str = None) -> int:
        return self._insert(
            """INSERT INTO videos (title, description, status, class_id, subject_id, topic_id)
               VALUES (?, ?, 'generating', ?, ?, ?)""",
            (title, description, class_id, subject_id, topic_id),
        )

    def get_video(self, video_id: int) -> dict | None:
        rows = self._query("SELECT * FROM videos WHERE id = ?", (video_id,))
        return rows[0] if rows else None

    def update_video_status(self, video_id: int, status: str, filename: str = None) -> None:
        if status not in VIDEO_STATUSES:
            raise ValueError(f"Unknown video status: {status}")
        db = self._connect()
        try:
            db.execute(
                """UPDATE videos SET status = ?, filename = COALESCE(?, filename),
                   updated_at = CURRENT_TIMESTAMP WHERE id = ?""",
                (status, filename, video_id),
            )
            db.commit()
        except sqlite3.Error as e:
            raise CurriculumStoreError(f"Curriculum write failed: {e}") from e
        finally:
            db.close()

    def create_question(self, topic_id: int, question: dict, video_id: int = None) -> int:
        return self._insert(
            """INSERT INTO questions
               (topic_id, text, option_a, option_b, option_c, option_d,
                correct_answer, explanation, difficulty, video_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                topic_id,
                question["text"],
                question["option_a"],
                question["option_b"],
                question["option_c"],
                question["option_d"],
                question["correct_answer"],
                question.get("explanation"),
                question.get("difficulty", "medium"),
                video_id,
            ),
        )


def _parse_timestamp(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise CurriculumStoreError(f"Corrupt usage timestamp {value!r}: {e}") from e


def get_default_store() -> SQLiteCurriculumStore:
    return SQLiteCurriculumStore(DATA_DIR / DB_FILENAME)


def resolve_class_id(value: str, store) -> int:
    """Accept either a numeric class id or a class name like 'Class 11'."""
    if value.isdigit():
        return int(value)
    class_row = store.find_class_by_name(value)
    if class_row is None:
        raise ValueError(f"Unknown class: {value}")
    return class_row["id"]


def load_curriculum_config() -> dict:
    """Load the curriculum seed configuration."""
    config_path = CONFIG_DIR / "curriculum.json"
    if not config_path.exists():
        raise FileNotFoundError(
            f"Curriculum config not found at {config_path}. "
            "Please create config/curriculum.json first."
        )
    with open(config_path) as f:
        return json.load(f)


def seed_curriculum(store: SQLiteCurriculumStore, curriculum: dict) -> dict:
    """
    Upsert classes, subjects and topics from a curriculum config.

    Existing rows are left untouched, so seeding twice never duplicates
    anything and never reorders the catalog.

    Returns:
        Counts of classes, subjects and topics present in the config.
    """
    counts = {"classes": 0, "subjects": 0, "topics": 0}

    for class_data in curriculum.get("classes", []):
        class_id = store.add_class(class_data["name"], class_data.get("description"))
        counts["classes"] += 1

        for subject_data in class_data.get("subjects", []):
            subject_id = store.add_subject(class_id, subject_data["name"])
            counts["subjects"] += 1

            for topic_name in subject_data.get("topics", []):
                store.add_topic(subject_id, topic_name)
                counts["topics"] += 1

    logger.info(
        f"Seeded {counts['classes']} classes, {counts['subjects']} subjects, "
        f"{counts['topics']} topics"
    )
    return counts


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    if len(sys.argv) < 2:
        print("Usage:")
        print("  python -m quizshorts.curriculum_db seed")
        print("  python -m quizshorts.curriculum_db list")
        sys.exit(1)

    command = sys.argv[1]
    store = get_default_store()

    if command == "seed":
        counts = seed_curriculum(store, load_curriculum_config())
        print(f"Curriculum seeded into {store.db_path}")
        print(f"  Classes:  {counts['classes']}")
        print(f"  Subjects: {counts['subjects']}")
        print(f"  Topics:   {counts['topics']}")

    elif command == "list":
        classes = store.list_classes()
        if not classes:
            print("No classes found. Run 'seed' first.")
        for cls in classes:
            print(f"[{cls['id']}] {cls['name']} - {cls['description'] or ''}")
            for subject in store.get_subjects_with_topics_and_usage_counts(cls["id"]):
                print(f"    {subject['subject_name']} ({len(subject['topics'])} topics)")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
