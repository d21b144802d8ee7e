"""Shared fixtures: an in-memory curriculum store and a temporary SQLite store."""

import itertools
from datetime import datetime, timedelta

import pytest

from quizshorts.curriculum_db import CurriculumStoreError, SQLiteCurriculumStore


class InMemoryCurriculumStore:
    """Dict-backed stand-in for SQLiteCurriculumStore.

    Set `fail` to make every read and write raise CurriculumStoreError.
    """

    def __init__(self):
        self.classes = {}
        self.subjects = {}
        self.topics = {}
        self.usage = []
        self.videos = {}
        self.questions = {}
        self.fail = False
        self._ids = itertools.count(1)
        self._clock = datetime(2026, 1, 1, 9, 0, 0)

    def _check(self):
        if self.fail:
            raise CurriculumStoreError("store unreachable")

    # Curriculum setup

    def add_class(self, name, description=None):
        class_id = next(self._ids)
        self.classes[class_id] = {"id": class_id, "name": name, "description": description}
        return class_id

    def add_subject(self, class_id, name):
        subject_id = next(self._ids)
        self.subjects[subject_id] = {"id": subject_id, "name": name, "class_id": class_id}
        return subject_id

    def add_topic(self, subject_id, name):
        topic_id = next(self._ids)
        self.topics[topic_id] = {"id": topic_id, "name": name, "subject_id": subject_id}
        return topic_id

    def delete_topic(self, topic_id):
        del self.topics[topic_id]

    def use(self, class_id, topic_id, times=1):
        """Append `times` usage records for a topic."""
        subject_id = self.topics[topic_id]["subject_id"]
        for _ in range(times):
            self.append_usage({"class_id": class_id, "subject_id": subject_id, "topic_id": topic_id})

    # Store interface

    def get_class(self, class_id):
        self._check()
        return self.classes.get(class_id)

    def find_class_by_name(self, name):
        self._check()
        return next((c for c in self.classes.values() if c["name"] == name), None)

    def get_subjects_with_topics_and_usage_counts(self, class_id):
        self._check()
        result = []
        for subject in sorted(self.subjects.values(), key=lambda s: s["id"]):
            if subject["class_id"] != class_id:
                continue
            topics = []
            for topic in sorted(self.topics.values(), key=lambda t: t["id"]):
                if topic["subject_id"] != subject["id"]:
                    continue
                records = [u for u in self.usage if u["topic_id"] == topic["id"]]
                topics.append({
                    "id": topic["id"],
                    "name": topic["name"],
                    "usage_count": len(records),
                    "last_used_at": max((u["used_at"] for u in records), default=None),
                })
            result.append({"subject_id": subject["id"], "subject_name": subject["name"], "topics": topics})
        return result

    def append_usage(self, record):
        self._check()
        # Deterministic, strictly increasing timestamps
        self._clock += timedelta(minutes=1)
        row = dict(record)
        row["id"] = len(self.usage) + 1
        row["used_at"] = self._clock
        self.usage.append(row)
        return row["id"]

    def query_recent(self, class_id, limit):
        self._check()
        rows = [u for u in self.usage if u["class_id"] == class_id]
        rows.sort(key=lambda u: (u["used_at"], u["id"]), reverse=True)
        return rows[:limit]

    def get_topic(self, topic_id):
        self._check()
        topic = self.topics.get(topic_id)
        if topic is None:
            return None
        subject = self.subjects.get(topic["subject_id"])
        if subject is None:
            return None
        return {"id": topic["id"], "name": topic["name"], "subject_id": subject["id"], "subject_name": subject["name"]}

    def create_video(self, class_id, subject_id, topic_id, title, description=None):
        self._check()
        video_id = next(self._ids)
        self.videos[video_id] = {
            "id": video_id,
            "class_id": class_id,
            "subject_id": subject_id,
            "topic_id": topic_id,
            "title": title,
            "description": description,
            "status": "generating",
            "filename": None,
        }
        return video_id

    def get_video(self, video_id):
        self._check()
        return dict(self.videos[video_id])

    def update_video_status(self, video_id, status, filename=None):
        self._check()
        self.videos[video_id]["status"] = status
        if filename is not None:
            self.videos[video_id]["filename"] = filename

    def create_question(self, topic_id, question, video_id=None):
        self._check()
        question_id = next(self._ids)
        self.questions[question_id] = dict(question, topic_id=topic_id, video_id=video_id)
        return question_id


@pytest.fixture
def store():
    return InMemoryCurriculumStore()


@pytest.fixture
def class11(store):
    """Class 11 with Physics [Motion(0), Gravitation(2)] and Chemistry [Atoms(1)]."""
    class_id = store.add_class("Class 11")
    physics = store.add_subject(class_id, "Physics")
    chemistry = store.add_subject(class_id, "Chemistry")
    ids = {
        "class_id": class_id,
        "physics": physics,
        "chemistry": chemistry,
        "motion": store.add_topic(physics, "Motion"),
        "gravitation": store.add_topic(physics, "Gravitation"),
        "atoms": store.add_topic(chemistry, "Atoms"),
    }
    store.use(class_id, ids["gravitation"], times=2)
    store.use(class_id, ids["atoms"], times=1)
    return ids


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteCurriculumStore(tmp_path / "quiz_shorts.db")
