import pytest

from quizshorts.topic_selection import EmptySubjectError
from quizshorts.video_pipeline import produce_topic_video, run_generation


def fake_content(class_name, selection, topics_history):
    return {
        "title": f"{selection['topic_name']} Quiz",
        "description": f"{class_name} {selection['subject_name']}",
        "question": {
            "text": f"Question about {selection['topic_name']}?",
            "option_a": "A",
            "option_b": "B",
            "option_c": "C",
            "option_d": "D",
            "correct_answer": "A",
            "explanation": "Because.",
        },
    }


def test_run_records_usage_only_for_produced_videos(store, class11):
    def renderer(video, question):
        if video["subject_id"] == class11["chemistry"]:
            raise RuntimeError("render crashed")
        return f"{video['id']}.mp4"

    summary = run_generation(class11["class_id"], 4, store=store, content_generator=fake_content, renderer=renderer)

    assert (summary["succeeded"], summary["failed"]) == (1, 1)
    physics, chemistry = summary["results"]
    assert physics["status"] == "generated"
    assert store.videos[physics["video_id"]]["filename"] == f"{physics['video_id']}.mp4"
    assert chemistry["status"] == "failed"
    assert "render crashed" in chemistry["error"]
    assert store.videos[chemistry["video_id"]]["status"] == "failed"

    recorded = [u for u in store.usage if u.get("video_id") is not None]
    assert [(u["topic_id"], u["video_id"]) for u in recorded] == [(class11["motion"], physics["video_id"])]


def test_run_passes_history_to_content_generator(store, class11):
    seen = []

    def generator(class_name, selection, topics_history):
        seen.append(list(topics_history))
        return fake_content(class_name, selection, topics_history)

    run_generation(class11["class_id"], 1, store=store, content_generator=generator)

    assert seen == [["Chemistry:Atoms", "Physics:Gravitation", "Physics:Gravitation"]]


def test_run_reports_coverage_after_last_topic_produced(store, class11):
    summary = run_generation(class11["class_id"], 4, store=store, content_generator=fake_content)

    assert summary["fully_covered"] is True
    assert summary["class_name"] == "Class 11"


def test_failed_content_generation_creates_no_video(store, class11):
    def generator(class_name, selection, topics_history):
        raise ValueError("LLM returned nonsense")

    usage_before = len(store.usage)
    summary = run_generation(class11["class_id"], 4, store=store, content_generator=generator)

    assert summary["succeeded"] == 0
    assert all(r["video_id"] is None for r in summary["results"])
    assert store.videos == {}
    assert len(store.usage) == usage_before


def test_question_is_linked_to_video(store, class11):
    selection = {
        "subject_id": class11["physics"],
        "subject_name": "Physics",
        "topic_id": class11["motion"],
        "topic_name": "Motion",
    }
    class_row = store.get_class(class11["class_id"])

    result = produce_topic_video(class_row, selection, [], store, content_generator=fake_content)

    (question,) = store.questions.values()
    assert question["video_id"] == result["video_id"]
    assert question["topic_id"] == class11["motion"]
    assert store.videos[result["video_id"]]["status"] == "generated"


def test_unknown_class_raises(store):
    with pytest.raises(ValueError, match="Class not found"):
        run_generation(404, store=store, content_generator=fake_content)


def test_zero_subjects_per_run_is_rejected(store, class11):
    with pytest.raises(ValueError, match="subjects_per_run"):
        run_generation(class11["class_id"], 0, store=store, content_generator=fake_content)

    assert store.videos == {}


def test_empty_subject_aborts_before_anything_is_created(store, class11):
    store.add_subject(class11["class_id"], "Biology")

    with pytest.raises(EmptySubjectError):
        run_generation(class11["class_id"], 4, store=store, content_generator=fake_content)

    assert store.videos == {}
