"""
Topic Selection - Least-used topic rotation across a class syllabus.

Decides which curriculum topic each subject feeds into the next quiz video,
so repeated generation runs sweep evenly across the syllabus instead of
clustering on a few topics.

Policy:
  - Per subject, pick the topic with the fewest recorded usages.
  - Ties go to the first topic in catalog (insertion) order. Never random,
    so coverage converges run over run.
  - Selecting a topic never records it. Callers record usage only after the
    video/question was actually produced (record_topic_usage).

All state lives in the injected store (see curriculum_db.SQLiteCurriculumStore
for the interface); this module keeps none between calls and takes no locks.
Two runs selecting for the same class at the same time may both pick the same
least-used topic. That costs fairness, not correctness: neither run has
recorded usage yet, and the next run sees both records.
"""

import logging
import os
from datetime import datetime

from dotenv import load_dotenv

from quizshorts.curriculum_db import CurriculumStoreError, get_default_store, resolve_class_id

load_dotenv()

logger = logging.getLogger(__name__)

SUBJECTS_PER_RUN = int(os.getenv("SUBJECTS_PER_RUN", "4"))
TOPIC_HISTORY_LIMIT = int(os.getenv("TOPIC_HISTORY_LIMIT", "100"))


class TopicSelectionError(RuntimeError):
    """Base error for topic rotation failures."""


class EmptySubjectError(TopicSelectionError):
    """A subject picked for this run has no topics to choose from."""

    def __init__(self, subject_id, subject_name: str):
        self.subject_id = subject_id
        self.subject_name = subject_name
        super().__init__(f"No topics available for subject: {subject_name}")


class TopicRetrievalError(TopicSelectionError):
    """The curriculum store could not be read."""


def _fetch_catalog(class_id, store) -> list[dict]:
    store = store or get_default_store()
    try:
        return store.get_subjects_with_topics_and_usage_counts(class_id)
    except CurriculumStoreError as e:
        logger.error(f"Curriculum lookup failed for class {class_id}: {e}")
        raise TopicRetrievalError(f"Failed to load topics for class {class_id}") from e


def get_topic_usage_stats(class_id, store=None) -> list[dict]:
    """
    Get per-topic usage statistics for a class.

    Args:
        class_id: Class to report on. An unknown class yields no rows.
        store: Curriculum store; defaults to the SQLite store under DATA_DIR.

    Returns:
        One dict per topic with topic_id, topic_name, subject_id, subject_name,
        class_id, class_name, usage_count and last_used_at (None if unused).

    Raises:
        TopicRetrievalError: The store failed. No partial result is returned.
    """
    store = store or get_default_store()
    catalog = _fetch_catalog(class_id, store)
    if not catalog:
        return []

    try:
        class_row = store.get_class(class_id)
    except CurriculumStoreError as e:
        logger.error(f"Class lookup failed for class {class_id}: {e}")
        raise TopicRetrievalError(f"Failed to get topic usage statistics for class {class_id}") from e
    class_name = class_row["name"] if class_row else None

    stats = []
    for subject in catalog:
        for topic in subject["topics"]:
            stats.append({
                "topic_id": topic["id"],
                "topic_name": topic["name"],
                "subject_id": subject["subject_id"],
                "subject_name": subject["subject_name"],
                "class_id": class_id,
                "class_name": class_name,
                "usage_count": topic["usage_count"],
                "last_used_at": topic.get("last_used_at"),
            })
    return stats


def get_subjects_with_topics(class_id, store=None) -> list[dict]:
    """Get the class's subjects in catalog order, each with its topics and usage counts."""
    catalog = _fetch_catalog(class_id, store)
    return [
        {
            "subject_id": subject["subject_id"],
            "subject_name": subject["subject_name"],
            "topics": [
                {"id": topic["id"], "name": topic["name"], "usage_count": topic["usage_count"]}
                for topic in subject["topics"]
            ],
        }
        for subject in catalog
    ]


def pick_least_used_topic(subject: dict) -> dict:
    """
    Pick the least-used topic of one subject.

    Sorts on (usage_count, catalog position), so among equally used topics
    the one created first wins.

    Raises:
        EmptySubjectError: The subject has no topics.
    """
    topics = subject["topics"]
    if not topics:
        raise EmptySubjectError(subject["subject_id"], subject["subject_name"])

    ranked = sorted(enumerate(topics), key=lambda item: (item[1]["usage_count"], item[0]))
    return ranked[0][1]


def select_topics_for_generation(class_id, subjects_per_run: int = SUBJECTS_PER_RUN, store=None) -> list[dict]:
    """
    Select one least-used topic per subject for the next generation run.

    Takes the first `subjects_per_run` subjects in catalog order (all of them
    if the class has fewer) and picks each one's least-used topic. Nothing is
    written; call record_topic_usage once content has actually been produced.

    Args:
        class_id: Class to select for.
        subjects_per_run: Maximum number of subjects to cover this run.
        store: Curriculum store; defaults to the SQLite store under DATA_DIR.

    Returns:
        List of dicts with subject_id, subject_name, topic_id, topic_name,
        in subject catalog order.

    Raises:
        ValueError: subjects_per_run is below 1.
        EmptySubjectError: A selected subject has no topics.
        TopicRetrievalError: The store failed.
    """
    if subjects_per_run < 1:
        raise ValueError(f"subjects_per_run must be at least 1, got {subjects_per_run}")

    subjects = get_subjects_with_topics(class_id, store=store)[:subjects_per_run]

    selected = []
    for subject in subjects:
        topic = pick_least_used_topic(subject)
        selected.append({
            "subject_id": subject["subject_id"],
            "subject_name": subject["subject_name"],
            "topic_id": topic["id"],
            "topic_name": topic["name"],
        })

    logger.info(
        f"Selected {len(selected)} topics for class {class_id}: "
        + ", ".join(f"{t['subject_name']}:{t['topic_name']}" for t in selected)
    )
    return selected


def record_topic_usage(class_id, subject_id, topic_id, video_id=None, store=None) -> None:
    """
    Append a usage record for a topic whose content was produced.

    Best effort: a failed write is logged and dropped, never raised, so
    bookkeeping can not fail a video that already exists. The cost is a
    possible undercount for that topic.
    """
    try:
        store = store or get_default_store()
        store.append_usage({
            "class_id": class_id,
            "subject_id": subject_id,
            "topic_id": topic_id,
            "video_id": video_id,
            "used_at": datetime.now(),
        })
    except Exception as e:
        logger.error(
            f"Error recording topic usage (class={class_id}, subject={subject_id}, "
            f"topic={topic_id}, video={video_id}): {e}"
        )


def get_topics_history(class_id, store=None, limit: int = TOPIC_HISTORY_LIMIT) -> list[str]:
    """
    Get recent topic usage as "Subject:Topic" strings, newest first.

    Used in the question prompt so the LLM avoids repeating recent topics.
    Records whose topic or subject has since been deleted are skipped.

    Raises:
        ValueError: limit is below 1.
        TopicRetrievalError: The store failed.
    """
    if limit < 1:
        raise ValueError(f"History limit must be at least 1, got {limit}")

    store = store or get_default_store()
    try:
        records = store.query_recent(class_id, limit)
        history = []
        for record in records[:limit]:
            topic = store.get_topic(record["topic_id"])
            if topic is None or not topic.get("subject_name"):
                continue
            history.append(f"{topic['subject_name']}:{topic['name']}")
    except CurriculumStoreError as e:
        logger.error(f"Error getting topics history for class {class_id}: {e}")
        raise TopicRetrievalError(f"Failed to get topics history for class {class_id}") from e

    return history


def is_fully_covered(class_id, store=None) -> bool:
    """
    Check whether every topic in the class has been used at least once.

    A class without topics is not covered. Any retrieval error reports False
    rather than a completed sweep.
    """
    try:
        subjects = get_subjects_with_topics(class_id, store=store)
    except Exception as e:
        logger.warning(f"Coverage check failed for class {class_id}, reporting not covered: {e}")
        return False

    counts = [topic["usage_count"] for subject in subjects for topic in subject["topics"]]
    return bool(counts) and min(counts) >= 1


def get_coverage_progress(class_id, store=None) -> dict:
    """
    Summarize how far the current syllabus sweep has progressed.

    Returns:
        A dict with total_topics/used_topics/remaining counts and a
        per-subject breakdown keyed by subject name.
    """
    subjects = get_subjects_with_topics(class_id, store=store)

    progress = {
        "class_id": class_id,
        "total_topics": 0,
        "used_topics": 0,
        "remaining": 0,
        "subjects": {},
    }

    for subject in subjects:
        total = len(subject["topics"])
        used = sum(1 for topic in subject["topics"] if topic["usage_count"] > 0)
        progress["subjects"][subject["subject_name"]] = {
            "total": total,
            "used": used,
            "remaining": total - used,
        }
        progress["total_topics"] += total
        progress["used_topics"] += used

    progress["remaining"] = progress["total_topics"] - progress["used_topics"]
    return progress


if __name__ == "__main__":
    import json
    import sys

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    if len(sys.argv) < 3:
        print("Usage:")
        print("  python -m quizshorts.topic_selection stats <class>")
        print("  python -m quizshorts.topic_selection select <class> [--subjects N]")
        print("  python -m quizshorts.topic_selection history <class>")
        print("  python -m quizshorts.topic_selection covered <class>")
        print("  python -m quizshorts.topic_selection progress <class>")
        sys.exit(1)

    command = sys.argv[1]
    store = get_default_store()
    class_id = resolve_class_id(sys.argv[2], store)

    if command == "stats":
        for row in get_topic_usage_stats(class_id, store=store):
            last_used = row["last_used_at"].isoformat(timespec="seconds") if row["last_used_at"] else "never"
            print(f"  {row['subject_name']:12s} {row['topic_name'][:50]:50s} {row['usage_count']:3d}  {last_used}")

    elif command == "select":
        subjects_per_run = SUBJECTS_PER_RUN
        if "--subjects" in sys.argv:
            idx = sys.argv.index("--subjects")
            if idx + 1 < len(sys.argv):
                subjects_per_run = int(sys.argv[idx + 1])
        selection = select_topics_for_generation(class_id, subjects_per_run, store=store)
        print(json.dumps(selection, indent=2))

    elif command == "history":
        history = get_topics_history(class_id, store=store)
        if not history:
            print("No topics used yet.")
        for entry in history:
            print(f"  {entry}")

    elif command == "covered":
        covered = is_fully_covered(class_id, store=store)
        print("All topics covered" if covered else "Some topics not yet used")

    elif command == "progress":
        progress = get_coverage_progress(class_id, store=store)
        print(f"Topic Coverage (class {class_id})")
        print(f"{'=' * 50}")
        print(f"Total topics: {progress['total_topics']}")
        print(f"Used: {progress['used_topics']}")
        print(f"Remaining: {progress['remaining']}")
        print()
        for subject_name, info in progress["subjects"].items():
            pct = (info["used"] / info["total"] * 100) if info["total"] > 0 else 0
            bar = "#" * int(pct / 5) + "-" * (20 - int(pct / 5))
            print(f"  {subject_name:20s} [{bar}] {info['used']:3d}/{info['total']:3d} ({pct:.0f}%)")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
